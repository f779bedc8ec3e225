from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from filterhours.db.models import WorkerRun


def insert_worker_run(
    db: Session,
    *,
    worker_name: str,
    started_at: datetime,
    finished_at: datetime,
    success: bool,
    devices_processed: int,
    details_json: dict[str, Any] | None,
    error_text: str | None,
) -> WorkerRun:
    run = WorkerRun(
        worker_name=worker_name,
        started_at=started_at,
        finished_at=finished_at,
        duration_seconds=max(0.0, (finished_at - started_at).total_seconds()),
        status="success" if success else "failed",
        success=success,
        devices_processed=devices_processed,
        details_json=details_json,
        error_text=error_text,
    )
    db.add(run)
    db.flush()
    return run


def get_latest_worker_runs(db: Session) -> dict[str, WorkerRun]:
    ranked_runs = (
        select(
            WorkerRun.id.label("id"),
            func.row_number()
            .over(
                partition_by=WorkerRun.worker_name,
                order_by=(WorkerRun.started_at.desc(), WorkerRun.id.desc()),
            )
            .label("rank_idx"),
        )
        .subquery()
    )
    runs = db.scalars(
        select(WorkerRun)
        .join(ranked_runs, ranked_runs.c.id == WorkerRun.id)
        .where(ranked_runs.c.rank_idx == 1)
    )
    return {run.worker_name: run for run in runs}
