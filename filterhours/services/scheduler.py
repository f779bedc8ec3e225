from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread

from filterhours.services.worker_runs import WorkerRunResult


@dataclass
class ScheduledJob:
    name: str
    interval_seconds: int
    run: Callable[[], WorkerRunResult]
    next_run_at: datetime | None = None
    last_result: WorkerRunResult | None = None
    last_error: str | None = None


class WorkerScheduler:
    def __init__(self, *, poll_seconds: float = 1.0):
        self._poll_seconds = poll_seconds
        self._logger = logging.getLogger("filterhours.scheduler")
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._lock = Lock()
        self._running = False
        self._jobs: dict[str, ScheduledJob] = {}

    def register(self, name: str, *, interval_seconds: int, run: Callable[[], WorkerRunResult]) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval for {name} must be positive")
        with self._lock:
            self._jobs[name] = ScheduledJob(name=name, interval_seconds=interval_seconds, run=run)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            job_intervals = {job.name: job.interval_seconds for job in self._jobs.values()}
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="worker-scheduler", daemon=True)
        self._thread.start()
        self._logger.info("started worker scheduler jobs=%s", job_intervals)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        with self._lock:
            self._running = False

    def run_due_jobs(self, now: datetime | None = None) -> list[WorkerRunResult]:
        """Run every job whose next run time has passed, in registration order."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            due = [job for job in self._jobs.values() if job.next_run_at is None or now >= job.next_run_at]

        results: list[WorkerRunResult] = []
        for job in due:
            result = self._run_job(job)
            with self._lock:
                job.next_run_at = now + timedelta(seconds=job.interval_seconds)
            if result is not None:
                results.append(result)
        return results

    def get_status_snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "running": self._running and not self._stop_event.is_set(),
                "jobs": {
                    job.name: {
                        "interval_seconds": job.interval_seconds,
                        "next_run_at": _to_iso(job.next_run_at),
                        "last_error": job.last_error,
                        "last_result": _result_to_dict(job.last_result),
                    }
                    for job in self._jobs.values()
                },
            }

    def _run_job(self, job: ScheduledJob) -> WorkerRunResult | None:
        try:
            result = job.run()
        except Exception as exc:
            self._logger.exception("scheduled job raised job=%s", job.name)
            with self._lock:
                job.last_error = str(exc)
            return None
        with self._lock:
            job.last_result = result
            job.last_error = result.error_text
        if not result.success:
            self._logger.warning("scheduled job failed job=%s error=%s", job.name, result.error_text)
        return result

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_due_jobs()
            except Exception:
                self._logger.exception("worker scheduler loop iteration failed")
            self._stop_event.wait(self._poll_seconds)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _result_to_dict(result: WorkerRunResult | None) -> dict[str, object] | None:
    if result is None:
        return None
    return {
        "worker_name": result.worker_name,
        "success": result.success,
        "started_at": _to_iso(result.started_at),
        "finished_at": _to_iso(result.finished_at),
        "duration_seconds": round(result.duration_seconds, 3),
        "devices_processed": result.devices_processed,
        "details": result.details,
        "error_text": result.error_text,
    }
