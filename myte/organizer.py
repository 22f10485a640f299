"""
Output Organization

After a stage completes, the declared outputs of its succeeded jobs are moved
from the per-job working directories into a fixed layout under the run's
output directory:

    <output>/
        genes.treefiles            combined gene trees, one per line
        gene-treefiles/            <alignment>.treefile from every gene job
        iqtree-genes/<prefix>/     remaining per-gene IQ-TREE files
        iqtree-species-tree/       concat.* from the species tree job
        iqtree-CF/                 concord.* from the concordance job
        astral-msc/                msc_astral.tree and msc_astral.log

Collision policy:
    When more than one file would land on the same destination, every one of
    them is renamed to ``<stem>.<job id><suffix>`` (job id sanitised). Planning
    sorts jobs and files, so the same inputs always give the same names.

Failed jobs are not touched: their working directories stay in place for
debugging and are listed in the log.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Union
import logging
import shutil
import warnings

from Bio import Phylo
from Bio.Phylo.NewickIO import NewickError

from .jobs import JobState, StageKind, StageResult
from .utils import sanitize_filename

logger = logging.getLogger(__name__)

GENE_TREE_DIR = "gene-treefiles"
GENE_OUTPUT_DIR = "iqtree-genes"

STAGE_DIRS: Dict[StageKind, str] = {
    StageKind.GENE_TREES: GENE_OUTPUT_DIR,
    StageKind.SPECIES_TREE: "iqtree-species-tree",
    StageKind.CONCORDANCE: "iqtree-CF",
    StageKind.MSC: "astral-msc",
}


class OutputCollision(UserWarning):
    """Two or more produced files claimed the same destination and were renamed."""


@dataclass(frozen=True)
class OutputRecord:
    """Where one produced file came from and where it was (or will be) placed."""
    job_id: str
    source: Path
    destination: Path
    collided: bool = False


class OutputOrganizer:
    """
    Move succeeded jobs' outputs into the canonical layout.

    Parameters
    ----------
    output_dir : Union[str, Path]
        Root of the organized output tree
    keep_workdirs : bool
        Keep succeeded jobs' working directories after their outputs are moved
    """

    def __init__(self, output_dir: Union[str, Path], keep_workdirs: bool = False):
        self.output_dir = Path(output_dir)
        self.keep_workdirs = keep_workdirs

    def destination_for(self, kind: StageKind, prefix: str, filename: str) -> Path:
        """Collision-free destination of one file."""
        if kind is StageKind.GENE_TREES:
            if filename.endswith(".treefile"):
                return self.output_dir / GENE_TREE_DIR / filename
            return self.output_dir / GENE_OUTPUT_DIR / prefix / filename
        return self.output_dir / STAGE_DIRS[kind] / filename

    def plan(self, result: StageResult) -> List[OutputRecord]:
        """
        Compute the destination of every declared output of every succeeded job.

        Nothing is moved. Records are sorted by job id, then source path.
        """
        claims = []
        for outcome in sorted(result.successful_outcomes, key=lambda o: o.job_id):
            job = outcome.job
            for source in job.declared_outputs():
                dest = self.destination_for(result.kind, job.prefix, source.name)
                claims.append((job.job_id, source, dest))

        by_destination: Dict[Path, int] = {}
        for _, _, dest in claims:
            by_destination[dest] = by_destination.get(dest, 0) + 1

        records = []
        for job_id, source, dest in claims:
            if by_destination[dest] > 1:
                renamed = dest.with_name(
                    f"{Path(dest.name).stem}.{sanitize_filename(job_id)}{dest.suffix}"
                )
                records.append(OutputRecord(job_id, source, renamed, collided=True))
            else:
                records.append(OutputRecord(job_id, source, dest))

        return records

    def finalize(self, result: StageResult) -> List[OutputRecord]:
        """
        Move outputs into place and clean up succeeded working directories.

        Existing destination files are overwritten. Failed jobs' working
        directories are left untouched and reported.

        Returns
        -------
        List[OutputRecord]
            Records of every moved file
        """
        records = self.plan(result)

        for record in records:
            if record.collided:
                message = (
                    f"Output name collision: {record.source.name} from "
                    f"{record.job_id} saved as {record.destination.name}"
                )
                logger.warning(message)
                warnings.warn(message, OutputCollision, stacklevel=2)

            record.destination.parent.mkdir(parents=True, exist_ok=True)
            if record.destination.is_file():
                record.destination.unlink()
            shutil.move(str(record.source), str(record.destination))
            logger.debug(f"Moved {record.source} -> {record.destination}")

        for outcome in result.outcomes:
            if outcome.state in (JobState.FAILED, JobState.COULD_NOT_START):
                logger.warning(
                    f"  Outputs of failed job {outcome.job_id} left in {outcome.job.working_dir}"
                )
            elif outcome.succeeded and not self.keep_workdirs:
                self._remove_workdir(outcome.job.working_dir)

        logger.info(f"Organized {len(records)} files from stage {result.name}")
        return records

    def _remove_workdir(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.warning(f"Could not remove working directory {path}: {e}")


def combine_gene_trees(
    treefiles: Iterable[Union[str, Path]],
    output_file: Union[str, Path],
) -> int:
    """
    Write every readable gene tree into one multi-tree Newick file.

    Each file is parsed with Bio.Phylo before its text is copied, so a
    truncated tree from a misbehaving run does not poison downstream stages.
    Unreadable files are skipped with a warning.

    Parameters
    ----------
    treefiles : Iterable[Union[str, Path]]
        Newick files, one tree each
    output_file : Union[str, Path]
        Combined file, one tree per line (overwritten)

    Returns
    -------
    int
        Number of trees written
    """
    output_path = Path(output_file)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    n_written = 0
    with open(output_path, 'w') as out:
        for treefile in sorted(Path(t) for t in treefiles):
            try:
                Phylo.read(str(treefile), "newick")
            except (NewickError, ValueError) as e:
                logger.warning(f"  ⚠ Skipping unreadable gene tree {treefile.name}: {e}")
                continue

            out.write(treefile.read_text().strip() + "\n")
            n_written += 1

    logger.info(f"Combined {n_written} gene trees into {output_path}")
    return n_written
