"""
Job and Stage Data Model

A job is one external-process invocation against one input unit. Jobs are
described by immutable JobDescriptor records; their lifecycle is tracked by
JobTracker, which allows only the transitions

    PENDING -> RUNNING -> {SUCCEEDED | FAILED | COULD_NOT_START}
    PENDING -> SKIPPED

so a terminal state is reached exactly once. Completed jobs are summarised as
JobOutcome records, and a stage's outcomes are aggregated into a StageResult.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple
import threading


class StageKind(Enum):
    """Category of a pipeline stage; selects the organized output subtree."""
    GENE_TREES = "gene-trees"
    SPECIES_TREE = "species-tree"
    CONCORDANCE = "concordance"
    MSC = "msc"


class JobState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COULD_NOT_START = "could-not-start"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = {
    JobState.SUCCEEDED,
    JobState.FAILED,
    JobState.COULD_NOT_START,
    JobState.SKIPPED,
}

_ALLOWED_TRANSITIONS = {
    JobState.PENDING: {JobState.RUNNING, JobState.SKIPPED},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED, JobState.COULD_NOT_START},
}


class InvalidTransition(Exception):
    """Raised when a job is moved along an edge the lifecycle does not allow."""


class JobSpawnFailure(Exception):
    """The external process could not be started."""

    def __init__(self, job_id: str, reason: str):
        super().__init__(f"{job_id}: could not start: {reason}")
        self.job_id = job_id
        self.reason = reason


class JobNonZeroExit(Exception):
    """The external process ran and exited with a non-zero status."""

    def __init__(self, job_id: str, exit_code: int, diagnostic_tail: str = ""):
        super().__init__(f"{job_id}: exited with status {exit_code}")
        self.job_id = job_id
        self.exit_code = exit_code
        self.diagnostic_tail = diagnostic_tail


@dataclass(frozen=True)
class JobDescriptor:
    """
    One fully materialised external-process invocation.

    Attributes
    ----------
    job_id : str
        Identifier, unique within its stage (the input file name for
        per-alignment jobs)
    stage : str
        Name of the stage the job belongs to
    input_path : Path
        Input file or directory the job consumes
    working_dir : Path
        Directory the process runs in; exclusive to this job
    command : Tuple[str, ...]
        Executable followed by its ordered arguments
    prefix : str
        Output prefix passed to the tool
    output_patterns : Tuple[str, ...]
        Glob patterns, relative to ``working_dir``, naming the declared outputs
    stdout_name : str
        Capture file for standard output inside ``working_dir``
    stderr_name : str
        Capture file for standard error inside ``working_dir``
    """
    job_id: str
    stage: str
    input_path: Path
    working_dir: Path
    command: Tuple[str, ...]
    prefix: str
    output_patterns: Tuple[str, ...] = ()
    stdout_name: str = "stdout.log"
    stderr_name: str = "stderr.log"

    def __post_init__(self):
        if not self.command:
            raise ValueError(f"Job {self.job_id} has an empty command")
        object.__setattr__(self, 'command', tuple(str(c) for c in self.command))
        object.__setattr__(self, 'output_patterns', tuple(self.output_patterns))
        object.__setattr__(self, 'input_path', Path(self.input_path))
        object.__setattr__(self, 'working_dir', Path(self.working_dir))

    @property
    def stdout_path(self) -> Path:
        return self.working_dir / self.stdout_name

    @property
    def stderr_path(self) -> Path:
        return self.working_dir / self.stderr_name

    def declared_outputs(self) -> List[Path]:
        """Existing files in the working directory matching the output patterns."""
        found = set()
        for pattern in self.output_patterns:
            for path in self.working_dir.glob(pattern):
                if path.is_file():
                    found.add(path)
        return sorted(found)


class JobTracker:
    """
    Thread-safe lifecycle table for the jobs of one stage.

    Every job starts PENDING. ``transition`` raises InvalidTransition for any
    edge not in the lifecycle, including every move out of a terminal state.
    """

    def __init__(self, job_ids: Sequence[str]):
        self._lock = threading.Lock()
        self._states: Dict[str, JobState] = {job_id: JobState.PENDING for job_id in job_ids}
        self._history: Dict[str, List[JobState]] = {
            job_id: [JobState.PENDING] for job_id in job_ids
        }

    def state(self, job_id: str) -> JobState:
        with self._lock:
            return self._states[job_id]

    def transition(self, job_id: str, new_state: JobState) -> None:
        with self._lock:
            if job_id not in self._states:
                raise KeyError(f"Unknown job: {job_id}")
            current = self._states[job_id]
            if new_state not in _ALLOWED_TRANSITIONS.get(current, set()):
                raise InvalidTransition(
                    f"{job_id}: {current.value} -> {new_state.value} is not allowed"
                )
            self._states[job_id] = new_state
            self._history[job_id].append(new_state)

    def history(self, job_id: str) -> List[JobState]:
        with self._lock:
            return list(self._history[job_id])


@dataclass(frozen=True)
class JobOutcome:
    """Terminal record of one job."""
    job: JobDescriptor
    state: JobState
    exit_code: Optional[int] = None
    reason: str = ""
    diagnostic_tail: str = ""
    pid: Optional[int] = None
    duration: float = 0.0

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.SUCCEEDED

    def as_exception(self) -> Optional[Exception]:
        """The failure as a domain exception, or None for non-failures."""
        if self.state is JobState.FAILED:
            return JobNonZeroExit(self.job_id, self.exit_code, self.diagnostic_tail)
        if self.state is JobState.COULD_NOT_START:
            return JobSpawnFailure(self.job_id, self.reason)
        return None


class StageStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class StageResult:
    """
    Aggregate outcome of one stage.

    A stage succeeds when it ran jobs and at least ``min_successes`` of them
    succeeded, or trivially when it had no jobs to run.
    """
    name: str
    kind: StageKind
    status: StageStatus
    outcomes: List[JobOutcome] = field(default_factory=list)
    duration: float = 0.0
    reason: str = ""

    @classmethod
    def from_outcomes(
        cls,
        name: str,
        kind: StageKind,
        outcomes: Sequence[JobOutcome],
        duration: float,
        min_successes: int = 1,
        cancelled: bool = False,
    ) -> 'StageResult':
        outcomes = list(outcomes)
        succeeded = sum(1 for o in outcomes if o.succeeded)

        if cancelled:
            status = StageStatus.CANCELLED
            reason = "cancelled by interrupt"
        elif not outcomes or succeeded >= min_successes:
            status = StageStatus.SUCCEEDED
            reason = ""
        else:
            status = StageStatus.FAILED
            reason = f"{succeeded} of {len(outcomes)} jobs succeeded (need {min_successes})"

        return cls(
            name=name,
            kind=kind,
            status=status,
            outcomes=outcomes,
            duration=duration,
            reason=reason,
        )

    @classmethod
    def skipped(cls, name: str, kind: StageKind, reason: str) -> 'StageResult':
        return cls(name=name, kind=kind, status=StageStatus.SKIPPED, reason=reason)

    @property
    def n_jobs(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.state is JobState.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(
            1 for o in self.outcomes
            if o.state in (JobState.FAILED, JobState.COULD_NOT_START)
        )

    @property
    def skipped_jobs(self) -> int:
        return sum(1 for o in self.outcomes if o.state is JobState.SKIPPED)

    @property
    def successful_outcomes(self) -> List[JobOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failures(self) -> List[Tuple[str, str]]:
        """(job_id, reason) for every failed or unstartable job."""
        result = []
        for outcome in self.outcomes:
            if outcome.state is JobState.FAILED:
                result.append((outcome.job_id, outcome.reason or f"exit code {outcome.exit_code}"))
            elif outcome.state is JobState.COULD_NOT_START:
                result.append((outcome.job_id, outcome.reason))
        return result

    @property
    def ok(self) -> bool:
        return self.status is StageStatus.SUCCEEDED
