"""
Progress and Event Log Reporter

Workers and the pipeline report lifecycle events by calling
``Reporter.emit``; the call stamps the event with the wall-clock time and puts
it on a queue, so it never waits on file or terminal I/O.

A single consumer thread owns everything downstream of the queue:

- the live counters of the current stage (running/succeeded/failed), reset
  on every StageStarted
- the persistent event log, one ``[timestamp] <stage> | <description>`` line
  per event, appended through the dedicated ``myte.events`` logger
- the one-line status display, redrawn with a carriage return on
  interactive terminals only

Because stamping and enqueueing happen under one lock, the order of lines in
the event log is the order in which the events happened.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, TextIO, Union
import logging
import queue
import sys
import threading

from .jobs import JobState
from .utils import LOG_DATE_FORMAT, format_duration

logger = logging.getLogger(__name__)

EVENT_LOGGER_NAME = "myte.events"
SPINNER_FRAMES = "🌑🌒🌓🌔🌕🌖🌗🌘"

_STOP = object()


@dataclass(frozen=True)
class StageStarted:
    stage: str
    n_jobs: int
    timestamp: Optional[datetime] = None

    def describe(self) -> str:
        return f"stage started: {self.n_jobs} jobs"


@dataclass(frozen=True)
class JobStarted:
    stage: str
    job_id: str
    timestamp: Optional[datetime] = None

    def describe(self) -> str:
        return f"job started: {self.job_id}"


@dataclass(frozen=True)
class JobFinished:
    stage: str
    job_id: str
    state: JobState
    exit_code: Optional[int] = None
    reason: str = ""
    duration: float = 0.0
    timestamp: Optional[datetime] = None

    def describe(self) -> str:
        text = f"job finished: {self.job_id} {self.state.value}"
        if self.state is not JobState.SUCCEEDED and self.reason:
            text += f" ({self.reason})"
        return text + f" in {self.duration:.1f}s"


@dataclass(frozen=True)
class StageFinished:
    stage: str
    result: Any
    timestamp: Optional[datetime] = None

    def describe(self) -> str:
        r = self.result
        text = (
            f"stage finished: {r.status.value} "
            f"({r.succeeded} succeeded, {r.failed} failed, {r.skipped_jobs} skipped) "
            f"in {format_duration(r.duration)}"
        )
        if r.reason:
            text += f": {r.reason}"
        return text


class Reporter:
    """
    Event sink for a run.

    Parameters
    ----------
    log_path : Union[str, Path]
        Persistent event log, opened in append mode
    show_progress : bool
        Draw the status line (only if ``stream`` is a terminal)
    stream : Optional[TextIO]
        Terminal stream for the status line (default: sys.stdout)
    refresh_interval : float
        Seconds between spinner redraws while no events arrive

    Examples
    --------
    >>> with Reporter("run/myte-events.log") as reporter:  # doctest: +SKIP
    ...     reporter.emit(StageStarted(stage="gene-trees", n_jobs=0))
    """

    def __init__(
        self,
        log_path: Union[str, Path],
        show_progress: bool = True,
        stream: Optional[TextIO] = None,
        refresh_interval: float = 0.15,
    ):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.stream = stream if stream is not None else sys.stdout
        self.refresh_interval = refresh_interval

        isatty = getattr(self.stream, "isatty", None)
        self.interactive = bool(show_progress and isatty and isatty())

        self._emit_lock = threading.Lock()
        self._queue: "queue.Queue" = queue.Queue()
        self._closed = False

        # Owned by the consumer thread
        self._stage = ""
        self._counts = {"total": 0, "running": 0, "succeeded": 0, "failed": 0}
        self._frame = 0
        self._status_width = 0
        self.events_written = 0

        self._event_logger = logging.getLogger(EVENT_LOGGER_NAME)
        self._event_logger.setLevel(logging.INFO)
        self._event_logger.propagate = False
        self._handler = logging.FileHandler(self.log_path, mode='a', encoding='utf-8')
        self._handler.setFormatter(logging.Formatter("%(message)s"))
        self._event_logger.addHandler(self._handler)

        self._thread = threading.Thread(target=self._consume, name="myte-reporter", daemon=True)
        self._thread.start()

    def __enter__(self) -> 'Reporter':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def emit(self, event) -> None:
        """Timestamp an event and queue it. Never blocks on I/O."""
        with self._emit_lock:
            if self._closed:
                logger.debug(f"Event after close dropped: {event}")
                return
            self._queue.put(replace(event, timestamp=datetime.now()))

    def close(self) -> None:
        """Flush pending events, stop the consumer thread and close the log."""
        with self._emit_lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_STOP)

        self._thread.join()
        self._clear_status()
        self._event_logger.removeHandler(self._handler)
        self._handler.close()

    def counts(self) -> Dict[str, int]:
        """Live counters of the current stage. Exact only after ``close()``."""
        return dict(self._counts)

    # ------------------------------------------------------------------
    # Consumer thread
    # ------------------------------------------------------------------

    def _consume(self) -> None:
        while True:
            try:
                event = self._queue.get(timeout=self.refresh_interval)
            except queue.Empty:
                self._draw_status()
                continue

            if event is _STOP:
                break

            self._update_counts(event)
            self._write_event(event)
            self._draw_status()

    def _update_counts(self, event) -> None:
        if isinstance(event, StageStarted):
            self._stage = event.stage
            self._counts = {"total": event.n_jobs, "running": 0, "succeeded": 0, "failed": 0}
        elif isinstance(event, JobStarted):
            self._counts["running"] += 1
        elif isinstance(event, JobFinished):
            self._counts["running"] = max(0, self._counts["running"] - 1)
            if event.state is JobState.SUCCEEDED:
                self._counts["succeeded"] += 1
            elif event.state in (JobState.FAILED, JobState.COULD_NOT_START):
                self._counts["failed"] += 1
        elif isinstance(event, StageFinished):
            self._stage = ""

    def _write_event(self, event) -> None:
        stamp = event.timestamp.strftime(LOG_DATE_FORMAT)
        self._clear_status()
        self._event_logger.info(f"[{stamp}] {event.stage} | {event.describe()}")
        self.events_written += 1

    def _draw_status(self) -> None:
        if not self.interactive or not self._stage:
            return

        c = self._counts
        done = c["succeeded"] + c["failed"]
        frame = SPINNER_FRAMES[self._frame % len(SPINNER_FRAMES)]
        self._frame += 1

        line = (
            f"{frame} {self._stage}: {done}/{c['total']} done | "
            f"{c['running']} running | {c['succeeded']} ✓ | {c['failed']} ✗"
        )
        padding = " " * max(0, self._status_width - len(line))
        self.stream.write("\r" + line + padding)
        self.stream.flush()
        self._status_width = len(line)

    def _clear_status(self) -> None:
        if not self.interactive or not self._status_width:
            return
        self.stream.write("\r" + " " * self._status_width + "\r")
        self.stream.flush()
        self._status_width = 0
