"""
Run Summary Reports

This module writes the tabular summaries of a run: one row per job outcome,
one row per stage, and the effective parameters the run used.
"""

import logging
import json
from pathlib import Path
from typing import Sequence, Union
import pandas as pd

from .jobs import StageResult
from .utils import format_duration, get_timestamp

logger = logging.getLogger(__name__)

JOB_COLUMNS = [
    'stage', 'job_id', 'state', 'exit_code', 'reason',
    'duration_s', 'input', 'working_dir', 'command',
]

STAGE_COLUMNS = [
    'stage', 'kind', 'status', 'n_jobs', 'n_succeeded', 'n_failed',
    'n_skipped', 'duration_s', 'reason',
]


def write_job_summary(
    stage_results: Sequence[StageResult],
    output_tsv: Union[str, Path],
) -> pd.DataFrame:
    """
    Write one row per job outcome across all stages.

    Parameters
    ----------
    stage_results : Sequence[StageResult]
        Results in stage order
    output_tsv : Union[str, Path]
        Output TSV path

    Returns
    -------
    pd.DataFrame
        The table that was written
    """
    out = Path(output_tsv)
    out.parent.mkdir(parents=True, exist_ok=True)

    rows = []
    for result in stage_results:
        for outcome in result.outcomes:
            rows.append({
                'stage': result.name,
                'job_id': outcome.job_id,
                'state': outcome.state.value,
                'exit_code': outcome.exit_code,
                'reason': outcome.reason,
                'duration_s': round(outcome.duration, 2),
                'input': str(outcome.job.input_path),
                'working_dir': str(outcome.job.working_dir),
                'command': " ".join(outcome.job.command),
            })

    df = pd.DataFrame(rows, columns=JOB_COLUMNS)
    # Keep exit codes integral when some jobs never produced one
    df['exit_code'] = df['exit_code'].astype('Int64')
    df.to_csv(out, sep='\t', index=False)

    logger.info(f"Job summary saved: {out}")
    return df


def write_stage_summary(
    stage_results: Sequence[StageResult],
    output_tsv: Union[str, Path],
) -> pd.DataFrame:
    """Write one row of counts per stage."""
    out = Path(output_tsv)
    out.parent.mkdir(parents=True, exist_ok=True)

    rows = [
        {
            'stage': result.name,
            'kind': result.kind.value,
            'status': result.status.value,
            'n_jobs': result.n_jobs,
            'n_succeeded': result.succeeded,
            'n_failed': result.failed,
            'n_skipped': result.skipped_jobs,
            'duration_s': round(result.duration, 2),
            'reason': result.reason,
        }
        for result in stage_results
    ]

    df = pd.DataFrame(rows, columns=STAGE_COLUMNS)
    df.to_csv(out, sep='\t', index=False)

    logger.info(f"Stage summary saved: {out}")
    return df


def save_run_parameters(cfg, mode: str, input_dir, output_json: Union[str, Path]) -> dict:
    """
    Save the effective run parameters as JSON for later reference.

    Parameters
    ----------
    cfg : PipelineConfig
        Configuration the run used
    mode : str
        Pipeline mode
    input_dir : Optional[Path]
        Alignment directory, if the mode uses one
    output_json : Union[str, Path]
        Output file path
    """
    params = {
        'started': get_timestamp(),
        'mode': mode,
        'input_dir': str(input_dir) if input_dir else None,
        'input_format': cfg.input.input_format,
        'iqtree_executable': cfg.iqtree.executable,
        'iqtree_params': cfg.iqtree.params,
        'astral_executable': cfg.astral.executable,
        'max_workers': cfg.scheduler.max_workers,
        'min_successes': cfg.scheduler.min_successes,
        'grace_period': cfg.scheduler.grace_period,
        'output_dir': str(cfg.output_dir),
    }

    out = Path(output_json)
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, 'w') as f:
        json.dump(params, f, indent=2)

    logger.info(f"Saved run parameters to {out}")
    return params


def format_stage_summary(result: StageResult) -> str:
    """
    One-line count summary of a stage for the console.

    Examples
    --------
    >>> format_stage_summary(result)  # doctest: +SKIP
    'gene-trees: succeeded | 48 succeeded, 2 failed, 0 skipped | 00:12:31'
    """
    return (
        f"{result.name}: {result.status.value} | "
        f"{result.succeeded} succeeded, {result.failed} failed, "
        f"{result.skipped_jobs} skipped | {format_duration(result.duration)}"
    )
