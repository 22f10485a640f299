"""
Resource-Aware Worker Pool

Runs the jobs of one stage as child processes with bounded concurrency and
returns a StageResult.

Sizing:
    The concurrency limit is the number of physical cores available to the
    process (or the configured override), clamped to [1, number of jobs].

Dispatch:
    Jobs are submitted in input order to a ThreadPoolExecutor whose FIFO work
    queue hands each job to exactly one worker thread. A worker prepares the
    job's working directory, spawns one process with stdout/stderr redirected
    to the job's capture files, blocks on its exit, records the terminal
    state and takes the next job. The calling thread only waits for the
    stage to drain.

Failures:
    A non-zero exit is recorded as FAILED with the tail of the captured
    stderr; a spawn error as COULD_NOT_START. Neither affects sibling jobs.

Cancellation:
    ``cancel()`` (also triggered by KeyboardInterrupt while the stage is
    draining) drops jobs that have not started, sends SIGTERM to every live
    child process group, waits for the grace period and then sends SIGKILL.
    The live-process registry is the only lock-protected structure shared
    between workers and the cancelling thread.
"""

from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Sequence
import logging
import os
import shutil
import signal
import subprocess
import threading
import time

from .jobs import (
    JobDescriptor,
    JobOutcome,
    JobState,
    JobTracker,
    StageKind,
    StageResult,
)
from .reporter import JobFinished, JobStarted
from .utils import physical_core_count, read_tail

logger = logging.getLogger(__name__)

DRAIN_POLL_INTERVAL = 0.5
DIAGNOSTIC_TAIL_LINES = 20


def resolve_worker_count(n_jobs: int, requested: Optional[int] = None) -> int:
    """
    Concurrency limit for a stage.

    Parameters
    ----------
    n_jobs : int
        Number of jobs in the stage
    requested : Optional[int]
        Explicit limit; None uses the physical core count

    Returns
    -------
    int
        Limit in [1, max(1, n_jobs)]

    Examples
    --------
    >>> resolve_worker_count(3, requested=8)
    3
    >>> resolve_worker_count(0, requested=8)
    1
    """
    limit = requested if requested else physical_core_count()
    return max(1, min(limit, n_jobs))


def _signal_process(proc: subprocess.Popen, sig: int) -> None:
    """Signal a child and everything in its process group."""
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except ProcessLookupError:
        pass


class WorkerPool:
    """
    Bounded-concurrency executor for JobDescriptors.

    Parameters
    ----------
    max_workers : Optional[int]
        Upper bound on concurrent jobs; None uses the physical core count
    grace_period : float
        Seconds a terminated child gets before it is killed
    emit : Optional[Callable]
        Event sink receiving JobStarted / JobFinished events. Called from
        worker threads; must not block.
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        grace_period: float = 10.0,
        emit: Optional[Callable] = None,
    ):
        self.max_workers = max_workers
        self.grace_period = grace_period
        self.emit = emit or (lambda event: None)

        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._live: Dict[str, subprocess.Popen] = {}
        self._futures: List = []

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def live_pids(self) -> List[int]:
        with self._lock:
            return [proc.pid for proc in self._live.values()]

    def run(
        self,
        stage: str,
        kind: StageKind,
        jobs: Sequence[JobDescriptor],
        min_successes: int = 1,
    ) -> StageResult:
        """
        Run every job of a stage and wait for all of them to finish.

        Parameters
        ----------
        stage : str
            Stage name used in events and the result
        kind : StageKind
            Stage category
        jobs : Sequence[JobDescriptor]
            Jobs in dispatch order; ids must be unique
        min_successes : int
            Successful jobs needed for the stage to succeed

        Returns
        -------
        StageResult
            Aggregate outcome; CANCELLED if ``cancel()`` was called
        """
        jobs = list(jobs)
        ids = [job.job_id for job in jobs]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate job ids in stage {stage}")

        workdirs = [job.working_dir for job in jobs]
        if len(set(workdirs)) != len(workdirs):
            raise ValueError(f"Jobs in stage {stage} share a working directory")

        tracker = JobTracker(ids)
        start = time.monotonic()

        if not jobs:
            return StageResult.from_outcomes(
                stage, kind, [], 0.0, min_successes, cancelled=self.cancelled
            )

        n_workers = resolve_worker_count(len(jobs), self.max_workers)
        logger.info(f"Running {len(jobs)} jobs on {n_workers} workers")

        with ThreadPoolExecutor(max_workers=n_workers, thread_name_prefix=f"myte-{stage}") as executor:
            futures = [executor.submit(self._execute, job, tracker) for job in jobs]
            with self._lock:
                self._futures = list(futures)

            if self.cancelled:
                self.cancel()

            pending = set(futures)
            while pending:
                try:
                    _, pending = wait(pending, timeout=DRAIN_POLL_INTERVAL)
                except KeyboardInterrupt:
                    logger.warning("Interrupt received, stopping running jobs...")
                    self.cancel()

        with self._lock:
            self._futures = []

        outcomes = []
        for job, future in zip(jobs, futures):
            if future.cancelled():
                tracker.transition(job.job_id, JobState.SKIPPED)
                outcomes.append(JobOutcome(
                    job=job,
                    state=JobState.SKIPPED,
                    reason="not started: run cancelled",
                ))
            else:
                outcomes.append(future.result())

        return StageResult.from_outcomes(
            stage,
            kind,
            outcomes,
            time.monotonic() - start,
            min_successes,
            cancelled=self.cancelled,
        )

    def cancel(self) -> None:
        """
        Stop the current stage.

        Jobs not yet started are dropped. Every live child process group gets
        SIGTERM, then SIGKILL if it is still alive after the grace period.
        Safe to call from any thread and more than once.
        """
        with self._lock:
            self._cancel_event.set()
            futures = list(self._futures)
            live = list(self._live.values())

        for future in futures:
            future.cancel()

        if live:
            logger.warning(f"Terminating {len(live)} running jobs")

        for proc in live:
            _signal_process(proc, signal.SIGTERM)

        deadline = time.monotonic() + self.grace_period
        for proc in live:
            self._reap(proc, max(0.0, deadline - time.monotonic()))

    def _reap(self, proc: subprocess.Popen, timeout: float) -> None:
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {proc.pid} ignored SIGTERM, killing it")
            _signal_process(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            proc.wait()

    def _stop_process(self, proc: subprocess.Popen) -> None:
        _signal_process(proc, signal.SIGTERM)
        self._reap(proc, self.grace_period)

    def _execute(self, job: JobDescriptor, tracker: JobTracker) -> JobOutcome:
        """Run one job to a terminal state. Job failures are returned, not raised."""
        if self.cancelled:
            tracker.transition(job.job_id, JobState.SKIPPED)
            return JobOutcome(job=job, state=JobState.SKIPPED, reason="not started: run cancelled")

        tracker.transition(job.job_id, JobState.RUNNING)
        self.emit(JobStarted(stage=job.stage, job_id=job.job_id))
        start = time.monotonic()

        try:
            if job.working_dir.exists():
                shutil.rmtree(job.working_dir)
            job.working_dir.mkdir(parents=True)
        except OSError as e:
            return self._finish(job, tracker, JobState.COULD_NOT_START, start,
                                reason=f"cannot prepare working directory: {e}")

        proc = None
        with open(job.stdout_path, 'wb') as out, open(job.stderr_path, 'wb') as err:
            try:
                proc = subprocess.Popen(
                    list(job.command),
                    cwd=str(job.working_dir),
                    stdout=out,
                    stderr=err,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as e:
                logger.debug(f"{job.job_id}: spawn failed: {e}")
                reason = str(e)

            if proc is not None:
                with self._lock:
                    self._live[job.job_id] = proc
                    late = self._cancel_event.is_set()

                # cancel() already took its snapshot of live processes
                if late:
                    self._stop_process(proc)

                try:
                    returncode = proc.wait()
                finally:
                    with self._lock:
                        self._live.pop(job.job_id, None)

        if proc is None:
            return self._finish(job, tracker, JobState.COULD_NOT_START, start, reason=reason)

        if returncode == 0:
            return self._finish(job, tracker, JobState.SUCCEEDED, start,
                                exit_code=0, pid=proc.pid)

        tail = read_tail(job.stderr_path, DIAGNOSTIC_TAIL_LINES)
        if not tail.strip():
            tail = read_tail(job.stdout_path, DIAGNOSTIC_TAIL_LINES)

        if returncode < 0:
            reason = f"terminated by signal {-returncode}"
        else:
            reason = f"exit code {returncode}"

        return self._finish(job, tracker, JobState.FAILED, start,
                            exit_code=returncode, reason=reason,
                            diagnostic_tail=tail, pid=proc.pid)

    def _finish(
        self,
        job: JobDescriptor,
        tracker: JobTracker,
        state: JobState,
        start: float,
        exit_code: Optional[int] = None,
        reason: str = "",
        diagnostic_tail: str = "",
        pid: Optional[int] = None,
    ) -> JobOutcome:
        tracker.transition(job.job_id, state)
        duration = time.monotonic() - start

        outcome = JobOutcome(
            job=job,
            state=state,
            exit_code=exit_code,
            reason=reason,
            diagnostic_tail=diagnostic_tail,
            pid=pid,
            duration=duration,
        )

        if state is JobState.SUCCEEDED:
            logger.debug(f"  ✓ {job.job_id} ({duration:.1f}s)")
        else:
            logger.debug(f"  ✗ {job.job_id}: {reason}")
        logger.debug(
            f"  {job.job_id}: " + " -> ".join(s.value for s in tracker.history(job.job_id))
        )

        self.emit(JobFinished(
            stage=job.stage,
            job_id=job.job_id,
            state=state,
            exit_code=exit_code,
            reason=reason,
            duration=duration,
        ))
        return outcome
