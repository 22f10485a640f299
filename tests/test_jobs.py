"""
Tests for the job lifecycle and stage aggregation.

Tests cover:
- Allowed and forbidden JobState transitions
- Terminal states being final
- StageResult status under the min_successes threshold
- Failure reporting and domain exceptions
"""

import unittest
from pathlib import Path

from myte.jobs import (
    InvalidTransition,
    JobDescriptor,
    JobNonZeroExit,
    JobOutcome,
    JobSpawnFailure,
    JobState,
    JobTracker,
    StageKind,
    StageResult,
    StageStatus,
)


def make_job(job_id, stage="gene-trees"):
    return JobDescriptor(
        job_id=job_id,
        stage=stage,
        input_path=Path(f"/data/{job_id}"),
        working_dir=Path(f"/work/{job_id}"),
        command=("iqtree2", "-s", f"/data/{job_id}"),
        prefix=Path(job_id).stem,
    )


class TestJobDescriptor(unittest.TestCase):
    """Test JobDescriptor."""

    def test_is_immutable(self):
        job = make_job("locus1.nex")
        with self.assertRaises(Exception):
            job.job_id = "other"

    def test_command_normalised_to_string_tuple(self):
        job = JobDescriptor(
            job_id="x",
            stage="s",
            input_path="/in",
            working_dir="/work/x",
            command=["iqtree2", "-T", 1],
            prefix="x",
        )
        self.assertEqual(job.command, ("iqtree2", "-T", "1"))
        self.assertEqual(job.stdout_path, Path("/work/x/stdout.log"))

    def test_empty_command_rejected(self):
        with self.assertRaises(ValueError):
            JobDescriptor(job_id="x", stage="s", input_path="/in",
                          working_dir="/w", command=(), prefix="x")


class TestJobTracker(unittest.TestCase):
    """Test JobTracker transitions."""

    def setUp(self):
        self.tracker = JobTracker(["a", "b"])

    def test_starts_pending(self):
        self.assertIs(self.tracker.state("a"), JobState.PENDING)

    def test_full_lifecycle(self):
        self.tracker.transition("a", JobState.RUNNING)
        self.tracker.transition("a", JobState.SUCCEEDED)

        self.assertEqual(
            self.tracker.history("a"),
            [JobState.PENDING, JobState.RUNNING, JobState.SUCCEEDED],
        )

    def test_pending_can_be_skipped(self):
        self.tracker.transition("b", JobState.SKIPPED)
        self.assertTrue(self.tracker.state("b").is_terminal)

    def test_cannot_finish_without_running(self):
        with self.assertRaises(InvalidTransition):
            self.tracker.transition("a", JobState.SUCCEEDED)

    def test_terminal_states_are_final(self):
        for terminal in (JobState.SUCCEEDED, JobState.FAILED, JobState.COULD_NOT_START):
            tracker = JobTracker(["x"])
            tracker.transition("x", JobState.RUNNING)
            tracker.transition("x", terminal)
            for target in JobState:
                with self.assertRaises(InvalidTransition):
                    tracker.transition("x", target)
            self.assertIs(tracker.state("x"), terminal)

    def test_running_cannot_be_skipped(self):
        self.tracker.transition("a", JobState.RUNNING)
        with self.assertRaises(InvalidTransition):
            self.tracker.transition("a", JobState.SKIPPED)
        self.assertIs(self.tracker.state("a"), JobState.RUNNING)

    def test_unknown_job(self):
        with self.assertRaises(KeyError):
            self.tracker.transition("zzz", JobState.RUNNING)


class TestStageResult(unittest.TestCase):
    """Test StageResult aggregation."""

    def setUp(self):
        self.outcomes = [
            JobOutcome(make_job("A.nex"), JobState.SUCCEEDED, exit_code=0),
            JobOutcome(make_job("B.nex"), JobState.FAILED, exit_code=1, reason="exit code 1"),
            JobOutcome(make_job("C.nex"), JobState.SUCCEEDED, exit_code=0),
            JobOutcome(make_job("D.nex"), JobState.COULD_NOT_START, reason="No such file"),
        ]

    def test_counts(self):
        result = StageResult.from_outcomes("gene-trees", StageKind.GENE_TREES, self.outcomes, 1.0)

        self.assertIs(result.status, StageStatus.SUCCEEDED)
        self.assertEqual(result.n_jobs, 4)
        self.assertEqual(result.succeeded, 2)
        self.assertEqual(result.failed, 2)
        self.assertEqual(result.skipped_jobs, 0)
        self.assertEqual(
            result.failures,
            [("B.nex", "exit code 1"), ("D.nex", "No such file")],
        )

    def test_failures_report_termination_reason(self):
        killed = JobOutcome(
            make_job("E.nex"), JobState.FAILED, exit_code=-15, reason="terminated by signal 15"
        )
        no_reason = JobOutcome(make_job("F.nex"), JobState.FAILED, exit_code=2)

        result = StageResult.from_outcomes(
            "gene-trees", StageKind.GENE_TREES, self.outcomes + [killed, no_reason], 1.0
        )

        self.assertIn(("E.nex", "terminated by signal 15"), result.failures)
        self.assertIn(("F.nex", "exit code 2"), result.failures)

    def test_threshold_not_met(self):
        result = StageResult.from_outcomes(
            "gene-trees", StageKind.GENE_TREES, self.outcomes, 1.0, min_successes=3
        )
        self.assertIs(result.status, StageStatus.FAILED)
        self.assertIn("need 3", result.reason)

    def test_zero_successes_fails(self):
        failed = [o for o in self.outcomes if not o.succeeded]
        result = StageResult.from_outcomes("gene-trees", StageKind.GENE_TREES, failed, 1.0)
        self.assertIs(result.status, StageStatus.FAILED)

    def test_no_jobs_is_trivially_successful(self):
        result = StageResult.from_outcomes("msc", StageKind.MSC, [], 0.0)
        self.assertTrue(result.ok)

    def test_cancelled_wins(self):
        result = StageResult.from_outcomes(
            "gene-trees", StageKind.GENE_TREES, self.outcomes, 1.0, cancelled=True
        )
        self.assertIs(result.status, StageStatus.CANCELLED)

    def test_skipped(self):
        result = StageResult.skipped("msc", StageKind.MSC, "astral is not available")
        self.assertIs(result.status, StageStatus.SKIPPED)
        self.assertEqual(result.n_jobs, 0)

    def test_outcome_exceptions(self):
        self.assertIsInstance(self.outcomes[1].as_exception(), JobNonZeroExit)
        self.assertIsInstance(self.outcomes[3].as_exception(), JobSpawnFailure)
        self.assertIsNone(self.outcomes[0].as_exception())


if __name__ == "__main__":
    unittest.main()
