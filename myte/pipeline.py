"""
Pipeline Orchestration

The Pipeline drives one run through the state machine

    NOT_STARTED -> CHECKING_DEPENDENCIES -> RUNNING_STAGE (once per stage)
        -> ORGANIZING_OUTPUTS -> COMPLETED

with FAILED and CANCELLED as absorbing states.

Stages form a fixed, ordered list chosen by the pipeline mode:

- gene:     gene trees
- species:  species tree
- concord:  concordance factors from an existing species tree and gene trees
- msc:      ASTRAL coalescent tree from an existing gene-tree file
- auto:     gene trees -> species tree -> concordance factors -> ASTRAL (optional)

Gating:
1. No job runs unless every mandatory tool passed the dependency check.
2. A stage whose tool is unavailable is SKIPPED when optional; otherwise the
   run fails.
3. A stage starts only if every stage it ``requires`` succeeded.
4. A stage succeeds when at least ``min_successes`` of its jobs succeeded
   (capped at the number of jobs). A failed stage that is required for
   continuation ends the run with StageExhausted.

After every stage the Output Organizer moves the succeeded outputs into
place; the gene stage then combines its trees into ``genes.treefiles`` for
the downstream stages.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union
import logging
import time

from .dependencies import (
    DependencyChecker,
    DependencyError,
    DependencyReport,
    requirements_for_mode,
)
from .iqtree import (
    CONCORDANCE_STAGE,
    GENE_STAGE,
    GENE_TREES_FILE,
    MSC_STAGE,
    SPECIES_PREFIX,
    SPECIES_STAGE,
    build_concordance_job,
    build_gene_tree_jobs,
    build_msc_job,
    build_species_tree_job,
    discover_alignments,
)
from .jobs import JobDescriptor, StageKind, StageResult, StageStatus
from .organizer import GENE_TREE_DIR, STAGE_DIRS, OutputOrganizer, OutputRecord, combine_gene_trees
from .reporter import Reporter, StageFinished, StageStarted
from .reports import format_stage_summary, save_run_parameters, write_job_summary, write_stage_summary
from .scheduler import WorkerPool
from .utils import (
    create_output_directory,
    format_elapsed_time,
    physical_core_count,
    remove_empty_directories,
)

logger = logging.getLogger(__name__)

PIPELINE_MODES = ("gene", "species", "concord", "msc", "auto")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


class PipelineState(Enum):
    NOT_STARTED = "not-started"
    CHECKING_DEPENDENCIES = "checking-dependencies"
    RUNNING_STAGE = "running-stage"
    ORGANIZING_OUTPUTS = "organizing-outputs"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageExhausted(Exception):
    """A mandatory stage ended without enough successful jobs."""

    def __init__(self, result: StageResult):
        message = f"Stage {result.name} failed"
        if result.reason:
            message += f": {result.reason}"
        super().__init__(message)
        self.result = result

    @property
    def failures(self) -> List[Tuple[str, str]]:
        return self.result.failures


class CancellationRequested(Exception):
    """The run was interrupted; live jobs have been terminated."""


@dataclass
class RunContext:
    """Mutable inputs shared by the stages of one run."""
    input_dir: Optional[Path]
    work_root: Path
    output_dir: Path
    gene_trees_file: Optional[Path] = None
    species_tree_file: Optional[Path] = None


@dataclass
class StageSpec:
    """
    One pipeline phase.

    Attributes
    ----------
    name : str
        Stage name used in logs, events and reports
    kind : StageKind
        Output category
    tool : str
        Dependency name the stage runs ("iqtree" or "astral")
    build_jobs : Callable[[RunContext], List[JobDescriptor]]
        Builds the stage's jobs when the stage starts
    optional : bool
        Skip instead of failing when the tool or a required input is missing
    required_for_continuation : bool
        Whether a failed result ends the run
    requires : Tuple[str, ...]
        Earlier stages whose outputs this stage consumes
    collect : Optional[Callable]
        Called with (context, result, records) after outputs are organized
    """
    name: str
    kind: StageKind
    tool: str
    build_jobs: Callable[[RunContext], List[JobDescriptor]]
    optional: bool = False
    required_for_continuation: bool = True
    requires: Tuple[str, ...] = ()
    collect: Optional[Callable] = None


@dataclass
class PipelineResult:
    """Final outcome of a run."""
    state: PipelineState
    dependencies: Optional[DependencyReport] = None
    stages: List[StageResult] = field(default_factory=list)
    records: List[OutputRecord] = field(default_factory=list)
    error: Optional[Exception] = None
    duration: float = 0.0

    @property
    def exit_code(self) -> int:
        if self.state is PipelineState.COMPLETED:
            return EXIT_OK
        if self.state is PipelineState.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_FAILED

    def stage(self, name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.name == name:
                return result
        return None


class Pipeline:
    """
    Run the stages of one pipeline mode.

    Parameters
    ----------
    cfg : PipelineConfig
        Run configuration
    mode : str
        One of PIPELINE_MODES
    input_dir : Optional[Union[str, Path]]
        Alignment directory (gene, species, concord and auto modes)
    gene_trees : Optional[Union[str, Path]]
        Existing combined gene-tree file (concord and msc modes)
    species_tree : Optional[Union[str, Path]]
        Existing species tree (concord mode)
    reporter : Optional[Reporter]
        Event sink; one writing to ``cfg.event_log`` is created if None
    checker : Optional[DependencyChecker]
        Dependency checker; one for the mode's requirements is created if None

    Raises
    ------
    ValueError
        If the mode is unknown or a required input argument is missing
    FileNotFoundError
        If an input path does not exist
    """

    def __init__(
        self,
        cfg,
        mode: str,
        input_dir: Optional[Union[str, Path]] = None,
        gene_trees: Optional[Union[str, Path]] = None,
        species_tree: Optional[Union[str, Path]] = None,
        reporter: Optional[Reporter] = None,
        checker: Optional[DependencyChecker] = None,
    ):
        if mode not in PIPELINE_MODES:
            raise ValueError(f"Unknown pipeline mode: {mode} (expected one of {', '.join(PIPELINE_MODES)})")

        self.cfg = cfg
        self.mode = mode
        self.state = PipelineState.NOT_STARTED
        self.history: List[PipelineState] = [self.state]

        output_dir = Path(cfg.output_dir).resolve()
        self.context = RunContext(
            input_dir=_existing_dir(input_dir) if input_dir else None,
            work_root=output_dir / cfg.work_dir.name,
            output_dir=output_dir,
            gene_trees_file=_existing_file(gene_trees) if gene_trees else None,
            species_tree_file=_existing_file(species_tree) if species_tree else None,
        )
        self._validate_inputs()

        if checker is None:
            extra_paths = [cfg.astral.launcher_dir] if cfg.astral.launcher_dir else []
            checker = DependencyChecker(
                requirements_for_mode(mode, cfg),
                extra_paths=extra_paths,
                timeout=cfg.scheduler.version_timeout,
            )
        self.checker = checker

        self._own_reporter = reporter is None
        self.reporter = reporter
        self.pool: Optional[WorkerPool] = None
        self.organizer = OutputOrganizer(output_dir, keep_workdirs=cfg.keep_workdirs)

        self._iqtree_cfg = cfg.iqtree
        self._astral_cfg = cfg.astral
        self._cancel_requested = False
        self._results: Dict[str, StageResult] = {}
        self._records: List[OutputRecord] = []

        self.stages = self.build_stages()

    def _validate_inputs(self) -> None:
        ctx = self.context
        if self.mode in ("gene", "species", "concord", "auto") and ctx.input_dir is None:
            raise ValueError(f"Mode '{self.mode}' needs an alignment directory")
        if self.mode in ("concord", "msc") and ctx.gene_trees_file is None:
            raise ValueError(f"Mode '{self.mode}' needs a gene-tree file")
        if self.mode == "concord" and ctx.species_tree_file is None:
            raise ValueError("Mode 'concord' needs a species tree file")

    # ------------------------------------------------------------------
    # Stage plan
    # ------------------------------------------------------------------

    def build_stages(self) -> List[StageSpec]:
        """Ordered stage list for the selected mode."""
        gene = StageSpec(
            name=GENE_STAGE,
            kind=StageKind.GENE_TREES,
            tool="iqtree",
            build_jobs=self._gene_jobs,
            collect=self._collect_gene_trees,
        )
        species = StageSpec(
            name=SPECIES_STAGE,
            kind=StageKind.SPECIES_TREE,
            tool="iqtree",
            build_jobs=self._species_jobs,
            collect=self._collect_species_tree,
        )
        concordance = StageSpec(
            name=CONCORDANCE_STAGE,
            kind=StageKind.CONCORDANCE,
            tool="iqtree",
            build_jobs=self._concordance_jobs,
        )
        msc = StageSpec(
            name=MSC_STAGE,
            kind=StageKind.MSC,
            tool="astral",
            build_jobs=self._msc_jobs,
        )

        if self.mode == "gene":
            return [gene]
        if self.mode == "species":
            return [species]
        if self.mode == "concord":
            return [concordance]
        if self.mode == "msc":
            return [msc]

        return [
            gene,
            species,
            replace(concordance, requires=(GENE_STAGE, SPECIES_STAGE)),
            replace(
                msc,
                optional=True,
                required_for_continuation=False,
                requires=(GENE_STAGE,),
            ),
        ]

    def _gene_jobs(self, ctx: RunContext) -> List[JobDescriptor]:
        alignments = discover_alignments(ctx.input_dir, self.cfg.input.input_format)
        return build_gene_tree_jobs(alignments, self._iqtree_cfg, ctx.work_root)

    def _species_jobs(self, ctx: RunContext) -> List[JobDescriptor]:
        if not discover_alignments(ctx.input_dir, self.cfg.input.input_format):
            return []
        return [build_species_tree_job(ctx.input_dir, self._iqtree_cfg, ctx.work_root)]

    def _concordance_jobs(self, ctx: RunContext) -> List[JobDescriptor]:
        if ctx.species_tree_file is None or ctx.gene_trees_file is None:
            return []
        threads = self.cfg.scheduler.max_workers or physical_core_count()
        return [build_concordance_job(
            ctx.input_dir,
            ctx.species_tree_file,
            ctx.gene_trees_file,
            threads,
            self._iqtree_cfg,
            ctx.work_root,
        )]

    def _msc_jobs(self, ctx: RunContext) -> List[JobDescriptor]:
        if ctx.gene_trees_file is None:
            return []
        return [build_msc_job(ctx.gene_trees_file, self._astral_cfg, ctx.work_root)]

    def _collect_gene_trees(self, ctx: RunContext, result: StageResult, records: List[OutputRecord]) -> None:
        tree_dir = ctx.output_dir / GENE_TREE_DIR
        treefiles = [
            r.destination for r in records
            if r.destination.parent == tree_dir and r.destination.suffix == ".treefile"
        ]
        if not treefiles:
            return

        combined = ctx.output_dir / GENE_TREES_FILE
        if combine_gene_trees(treefiles, combined):
            ctx.gene_trees_file = combined

    def _collect_species_tree(self, ctx: RunContext, result: StageResult, records: List[OutputRecord]) -> None:
        tree = ctx.output_dir / STAGE_DIRS[StageKind.SPECIES_TREE] / f"{SPECIES_PREFIX}.treefile"
        if tree.is_file():
            ctx.species_tree_file = tree

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new_state: PipelineState, detail: str = "") -> None:
        suffix = f" ({detail})" if detail else ""
        logger.debug(f"Pipeline state: {self.state.value} -> {new_state.value}{suffix}")
        self.state = new_state
        self.history.append(new_state)

    def cancel(self) -> None:
        """Request cancellation from another thread or a signal handler."""
        self._cancel_requested = True
        if self.pool is not None:
            self.pool.cancel()

    def run(self) -> PipelineResult:
        """
        Execute the run to a final state.

        Job failures, stage exhaustion, dependency failures and interrupts
        all end up in the returned PipelineResult rather than being raised.
        """
        start = time.monotonic()
        result = PipelineResult(state=self.state)

        create_output_directory(self.context.output_dir)
        if self.reporter is None:
            self.reporter = Reporter(
                self.context.output_dir / self.cfg.event_log.name,
                show_progress=self.cfg.show_progress,
                refresh_interval=self.cfg.scheduler.refresh_interval,
            )
        self.pool = WorkerPool(
            max_workers=self.cfg.scheduler.max_workers,
            grace_period=self.cfg.scheduler.grace_period,
            emit=self.reporter.emit,
        )
        if self._cancel_requested:
            self.pool.cancel()

        try:
            self._transition(PipelineState.CHECKING_DEPENDENCIES)
            logger.info("Checking external dependencies...")
            report = self.checker.check()
            result.dependencies = report

            if not report.can_proceed:
                try:
                    report.raise_for_missing()
                except DependencyError as e:
                    result.error = e
                logger.error(f"  ✗ Cannot proceed: {result.error}")
                self._transition(PipelineState.FAILED, "dependencies")
                return result

            self._use_resolved_executables(report)
            save_run_parameters(
                self.cfg, self.mode, self.context.input_dir,
                self.context.output_dir / "myte-parameters.json",
            )

            try:
                for index, spec in enumerate(self.stages, start=1):
                    if self._cancel_requested:
                        raise CancellationRequested("cancelled before stage start")

                    self._transition(PipelineState.RUNNING_STAGE, spec.name)
                    logger.info("")
                    logger.info(f"STAGE {index}: {spec.name}")
                    logger.info("-" * 80)

                    stage_result = self._run_stage(spec, report)
                    self._results[spec.name] = stage_result
                    result.stages.append(stage_result)

                    if stage_result.status is StageStatus.CANCELLED:
                        raise CancellationRequested(f"stage {spec.name} cancelled")
                    if stage_result.status is StageStatus.FAILED and spec.required_for_continuation:
                        raise StageExhausted(stage_result)

            except KeyboardInterrupt:
                logger.warning("Interrupt received, stopping...")
                self.pool.cancel()
                raise CancellationRequested("interrupted")

            self._transition(PipelineState.ORGANIZING_OUTPUTS)
            self._write_reports(result)
            self._transition(PipelineState.COMPLETED)

        except StageExhausted as e:
            result.error = e
            logger.error(f"✗ {e}")
            for job_id, reason in e.failures:
                logger.error(f"    {job_id}: {reason}")
            self._write_reports(result)
            self._transition(PipelineState.FAILED, e.result.name)

        except CancellationRequested as e:
            result.error = e
            logger.warning(f"⊘ Run cancelled: {e}")
            self._write_reports(result)
            self._transition(PipelineState.CANCELLED)

        finally:
            result.state = self.state
            result.records = list(self._records)
            result.duration = time.monotonic() - start
            logger.info(f"Run {self.state.value} after {format_elapsed_time(result.duration)}")
            if self._own_reporter:
                self.reporter.close()

        return result

    def _use_resolved_executables(self, report: DependencyReport) -> None:
        # Jobs run in their own working directories, so use absolute tool paths
        iqtree = report.get("iqtree")
        if iqtree is not None and iqtree.available:
            self._iqtree_cfg = replace(self.cfg.iqtree, executable=str(iqtree.path))
        astral = report.get("astral")
        if astral is not None and astral.available:
            self._astral_cfg = replace(self.cfg.astral, executable=str(astral.path))

    def _skip(self, spec: StageSpec, reason: str) -> StageResult:
        logger.warning(f"  ⊘ Skipping {spec.name}: {reason}")
        result = StageResult.skipped(spec.name, spec.kind, reason)
        self.reporter.emit(StageStarted(stage=spec.name, n_jobs=0))
        self.reporter.emit(StageFinished(stage=spec.name, result=result))
        return result

    def _fail_without_jobs(self, spec: StageSpec, reason: str) -> StageResult:
        result = StageResult(name=spec.name, kind=spec.kind, status=StageStatus.FAILED, reason=reason)
        self.reporter.emit(StageStarted(stage=spec.name, n_jobs=0))
        self.reporter.emit(StageFinished(stage=spec.name, result=result))
        return result

    def _run_stage(self, spec: StageSpec, report: DependencyReport) -> StageResult:
        ctx = self.context
        min_successes = self.cfg.scheduler.min_successes

        if not report.is_available(spec.tool):
            if spec.optional:
                return self._skip(spec, f"{spec.tool} is not available")
            return self._fail_without_jobs(spec, f"{spec.tool} is not available")

        for required in spec.requires:
            prior = self._results.get(required)
            if prior is None or not prior.ok or prior.succeeded == 0:
                reason = f"requires successful stage {required}"
                if spec.optional:
                    return self._skip(spec, reason)
                return self._fail_without_jobs(spec, reason)

        jobs = spec.build_jobs(ctx)
        if not jobs:
            if spec.optional:
                result = StageResult.from_outcomes(spec.name, spec.kind, [], 0.0)
                self.reporter.emit(StageStarted(stage=spec.name, n_jobs=0))
                self.reporter.emit(StageFinished(stage=spec.name, result=result))
                logger.info(f"  ✓ {spec.name}: nothing to do")
                return result
            logger.error(f"  ✗ {spec.name}: no input found")
            return self._fail_without_jobs(spec, "no input found")

        logger.info(f"Dispatching {len(jobs)} {spec.name} jobs...")
        self.reporter.emit(StageStarted(stage=spec.name, n_jobs=len(jobs)))

        result = self.pool.run(
            spec.name,
            spec.kind,
            jobs,
            min_successes=min(min_successes, len(jobs)),
        )

        records = self.organizer.finalize(result)
        self._records.extend(records)

        if result.ok and spec.collect is not None:
            spec.collect(ctx, result, records)

        self.reporter.emit(StageFinished(stage=spec.name, result=result))
        self._log_stage_result(result)
        return result

    def _log_stage_result(self, result: StageResult) -> None:
        marker = {
            StageStatus.SUCCEEDED: "✓",
            StageStatus.FAILED: "✗",
            StageStatus.SKIPPED: "⊘",
            StageStatus.CANCELLED: "⊘",
        }[result.status]
        logger.info(f"  {marker} {format_stage_summary(result)}")

        for job_id, reason in result.failures:
            logger.warning(f"    ✗ {job_id}: {reason}")
        for outcome in result.outcomes:
            if outcome.diagnostic_tail:
                logger.debug(f"--- {outcome.job_id} stderr tail ---\n{outcome.diagnostic_tail}")
        if result.failures:
            logger.info(f"    See {self.cfg.event_log.name} and the kept working directories for details")

    def _write_reports(self, result: PipelineResult) -> None:
        out = self.context.output_dir
        if result.stages:
            write_job_summary(result.stages, out / "myte-jobs.tsv")
            write_stage_summary(result.stages, out / "myte-stages.tsv")
        remove_empty_directories(out)


def _existing_dir(path: Union[str, Path]) -> Path:
    p = Path(path)
    if not p.is_dir():
        raise FileNotFoundError(f"Directory not found: {p}")
    return p.resolve()


def _existing_file(path: Union[str, Path]) -> Path:
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(f"File not found: {p}")
    return p.resolve()
