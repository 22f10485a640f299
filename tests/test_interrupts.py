"""
Tests for interrupting a running ``myte`` process.

The CLI is started as a real subprocess running a gene tree stage whose fake
IQ-TREE jobs sleep. SIGINT (Ctrl-C) and SIGTERM must both stop every job
process and end the run with exit code 130.
"""

import os
import shutil
import signal
import subprocess
import sys
import tempfile
import time
import unittest
from pathlib import Path

import psutil
import yaml

from myte.pipeline import EXIT_CANCELLED

from fake_tools import make_alignments, make_fake_iqtree

PROJECT_ROOT = Path(__file__).resolve().parents[1]
STARTUP_TIMEOUT = 30
EXIT_TIMEOUT = 60


def still_running(process):
    try:
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


@unittest.skipUnless(os.name == "posix", "process groups and POSIX signals required")
class TestInterrupts(unittest.TestCase):
    """Test SIGINT and SIGTERM delivered to the CLI during a stage."""

    def setUp(self):
        self.tmpdir = Path(tempfile.mkdtemp())
        self.aln_dir = self.tmpdir / "alignments"
        self.output = self.tmpdir / "output"
        make_alignments(self.aln_dir, ["A", "B", "C", "D"], content={n: "SLEEP" for n in "ABCD"})

        iqtree = make_fake_iqtree(self.tmpdir / "bin")
        self.config_path = self.tmpdir / "myte.yaml"
        self.config_path.write_text(yaml.safe_dump({
            "iqtree": {"executable": str(iqtree)},
            "scheduler": {"grace_period": 5.0},
        }))

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def _start(self):
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(
            p for p in [str(PROJECT_ROOT), env.get("PYTHONPATH")] if p
        )
        return subprocess.Popen(
            [
                sys.executable, "-m", "myte.cli", "gene",
                "-d", str(self.aln_dir),
                "-o", str(self.output),
                "-c", str(self.config_path),
                "--workers", "2",
                "--no-progress",
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            env=env,
        )

    def _wait_for_running_jobs(self, proc, n_jobs):
        event_log = self.output / "myte-events.log"
        deadline = time.monotonic() + STARTUP_TIMEOUT
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                self.fail(f"myte exited early:\n{proc.stdout.read().decode(errors='replace')}")
            if event_log.exists():
                started = event_log.read_text().count("job started")
                if started >= n_jobs:
                    return
            time.sleep(0.1)
        proc.kill()
        self.fail("jobs did not start in time")

    def _interrupt(self, sig):
        proc = self._start()
        try:
            self._wait_for_running_jobs(proc, 2)
            descendants = psutil.Process(proc.pid).children(recursive=True)
            self.assertGreaterEqual(len(descendants), 2)

            proc.send_signal(sig)
            output, _ = proc.communicate(timeout=EXIT_TIMEOUT)
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

        return proc.returncode, output.decode(errors="replace"), descendants

    def _assert_clean_cancel(self, returncode, output, descendants):
        self.assertEqual(returncode, EXIT_CANCELLED, output)
        self.assertIn("CANCELLED", output)
        self.assertIn("gene-trees: cancelled", output)
        # Allow the init process a moment to reap reparented children
        deadline = time.monotonic() + 5
        while any(still_running(p) for p in descendants) and time.monotonic() < deadline:
            time.sleep(0.1)
        self.assertEqual([p.pid for p in descendants if still_running(p)], [])

    def test_sigint_stops_all_jobs(self):
        self._assert_clean_cancel(*self._interrupt(signal.SIGINT))

    def test_sigterm_stops_all_jobs(self):
        self._assert_clean_cancel(*self._interrupt(signal.SIGTERM))

    def test_job_summary_written_after_interrupt(self):
        returncode, output, _ = self._interrupt(signal.SIGINT)

        self.assertEqual(returncode, EXIT_CANCELLED, output)
        summary = (self.output / "myte-jobs.tsv").read_text()
        self.assertIn("skipped", summary)
        self.assertNotIn("succeeded", summary)


if __name__ == "__main__":
    unittest.main()
