from __future__ import annotations

from datetime import timedelta
from unittest import TestCase

from filterhours.services.scheduler import WorkerScheduler
from filterhours.services.worker_runs import WorkerRunResult
from tests.support import utc

NOW = utc(2026, 7, 1, 8)


def _result(name: str, *, success: bool = True) -> WorkerRunResult:
    return WorkerRunResult(
        worker_name=name,
        success=success,
        started_at=NOW,
        finished_at=NOW + timedelta(seconds=2),
        devices_processed=4,
        details={},
        error_text=None if success else "database unavailable",
    )


class WorkerSchedulerTests(TestCase):
    def setUp(self) -> None:
        self.calls: list[str] = []
        self.scheduler = WorkerScheduler()

    def _job(self, name: str, *, success: bool = True):
        def _run() -> WorkerRunResult:
            self.calls.append(name)
            return _result(name, success=success)

        return _run

    def test_jobs_run_on_their_own_interval(self) -> None:
        self.scheduler.register("session_stitcher", interval_seconds=300, run=self._job("session_stitcher"))
        self.scheduler.register("daily_summary", interval_seconds=600, run=self._job("daily_summary"))

        self.scheduler.run_due_jobs(NOW)
        self.scheduler.run_due_jobs(NOW + timedelta(seconds=300))
        self.scheduler.run_due_jobs(NOW + timedelta(seconds=450))
        self.scheduler.run_due_jobs(NOW + timedelta(seconds=600))

        self.assertEqual(
            self.calls,
            ["session_stitcher", "daily_summary", "session_stitcher", "session_stitcher", "daily_summary"],
        )

    def test_failures_do_not_stop_other_jobs(self) -> None:
        def _raises() -> WorkerRunResult:
            raise RuntimeError("unexpected")

        self.scheduler.register("broken", interval_seconds=60, run=_raises)
        self.scheduler.register("failing", interval_seconds=60, run=self._job("failing", success=False))
        self.scheduler.register("healthy", interval_seconds=60, run=self._job("healthy"))

        with self.assertLogs("filterhours.scheduler", level="WARNING"):
            results = self.scheduler.run_due_jobs(NOW)

        self.assertEqual([result.worker_name for result in results], ["failing", "healthy"])
        snapshot = self.scheduler.get_status_snapshot()
        self.assertEqual(snapshot["jobs"]["broken"]["last_error"], "unexpected")
        self.assertEqual(snapshot["jobs"]["failing"]["last_error"], "database unavailable")
        self.assertTrue(snapshot["jobs"]["healthy"]["last_result"]["success"])

    def test_start_and_stop(self) -> None:
        self.scheduler.register("healthy", interval_seconds=3600, run=self._job("healthy"))

        self.scheduler.start()
        self.assertTrue(self.scheduler.get_status_snapshot()["running"])
        self.scheduler.stop()

        self.assertFalse(self.scheduler.get_status_snapshot()["running"])

    def test_rejects_non_positive_interval(self) -> None:
        with self.assertRaises(ValueError):
            self.scheduler.register("bad", interval_seconds=0, run=self._job("bad"))
