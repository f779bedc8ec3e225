from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from filterhours.repositories.worker_runs import insert_worker_run

_logger = logging.getLogger("filterhours.worker_runs")


@dataclass(frozen=True)
class WorkerOutcome:
    devices_processed: int = 0
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkerRunResult:
    worker_name: str
    success: bool
    started_at: datetime
    finished_at: datetime
    devices_processed: int
    details: dict[str, Any]
    error_text: str | None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.finished_at - self.started_at).total_seconds())


def run_worker(
    *,
    session_factory: sessionmaker,
    worker_name: str,
    fn: Callable[[Session], WorkerOutcome],
) -> WorkerRunResult:
    """Run one worker invocation as a single all-or-nothing transaction.

    The success audit row is written inside the worker's own transaction. On
    failure everything the worker did is rolled back, and the failed run is
    recorded in a fresh transaction so the audit survives the rollback.
    """
    started_at = datetime.now(timezone.utc)
    _logger.info("worker started worker=%s", worker_name)

    try:
        with session_factory() as db:
            try:
                outcome = fn(db)
                finished_at = datetime.now(timezone.utc)
                insert_worker_run(
                    db,
                    worker_name=worker_name,
                    started_at=started_at,
                    finished_at=finished_at,
                    success=True,
                    devices_processed=outcome.devices_processed,
                    details_json=outcome.details,
                    error_text=None,
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
    except Exception as exc:
        finished_at = datetime.now(timezone.utc)
        error_text = _summarize_exception(exc)
        _logger.exception("worker failed worker=%s error=%s", worker_name, error_text)
        _record_failed_run(
            session_factory=session_factory,
            worker_name=worker_name,
            started_at=started_at,
            finished_at=finished_at,
            error_text=error_text,
        )
        return WorkerRunResult(
            worker_name=worker_name,
            success=False,
            started_at=started_at,
            finished_at=finished_at,
            devices_processed=0,
            details={},
            error_text=error_text,
        )

    result = WorkerRunResult(
        worker_name=worker_name,
        success=True,
        started_at=started_at,
        finished_at=finished_at,
        devices_processed=outcome.devices_processed,
        details=dict(outcome.details),
        error_text=None,
    )
    _logger.info(
        "worker finished worker=%s duration_seconds=%.2f devices_processed=%s",
        worker_name,
        result.duration_seconds,
        result.devices_processed,
    )
    return result


def _record_failed_run(
    *,
    session_factory: sessionmaker,
    worker_name: str,
    started_at: datetime,
    finished_at: datetime,
    error_text: str,
) -> None:
    try:
        with session_factory() as db:
            insert_worker_run(
                db,
                worker_name=worker_name,
                started_at=started_at,
                finished_at=finished_at,
                success=False,
                devices_processed=0,
                details_json=None,
                error_text=error_text,
            )
            db.commit()
    except Exception:
        _logger.exception("failed to record worker run worker=%s", worker_name)


def _summarize_exception(exc: Exception) -> str:
    text = str(exc).strip()
    if not text:
        return exc.__class__.__name__
    return text[:2000]
