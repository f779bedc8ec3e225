from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from filterhours.db.models import RuntimeSession


def get_session(db: Session, session_id: int) -> RuntimeSession | None:
    return db.get(RuntimeSession, session_id)


def get_open_session(db: Session, *, device_key: str) -> RuntimeSession | None:
    return db.scalars(
        select(RuntimeSession)
        .where(RuntimeSession.device_key == device_key, RuntimeSession.ended_at.is_(None))
        .order_by(RuntimeSession.started_at.desc(), RuntimeSession.id.desc())
        .limit(1)
    ).first()


def get_latest_closed_session_end(db: Session, *, device_key: str) -> datetime | None:
    return db.scalar(
        select(func.max(RuntimeSession.ended_at)).where(
            RuntimeSession.device_key == device_key,
            RuntimeSession.ended_at.is_not(None),
        )
    )


def list_closed_sessions_ending_after(
    db: Session,
    *,
    device_key: str,
    after_ts: datetime | None,
) -> list[RuntimeSession]:
    query = select(RuntimeSession).where(
        RuntimeSession.device_key == device_key,
        RuntimeSession.ended_at.is_not(None),
    )
    if after_ts is not None:
        query = query.where(RuntimeSession.ended_at > after_ts)
    return list(db.scalars(query.order_by(RuntimeSession.started_at.asc(), RuntimeSession.id.asc())))


def list_closed_sessions_started_between(
    db: Session,
    *,
    device_key: str,
    from_ts: datetime,
    to_ts: datetime,
) -> list[RuntimeSession]:
    return list(
        db.scalars(
            select(RuntimeSession)
            .where(
                RuntimeSession.device_key == device_key,
                RuntimeSession.ended_at.is_not(None),
                RuntimeSession.started_at >= from_ts,
                RuntimeSession.started_at < to_ts,
            )
            .order_by(RuntimeSession.started_at.asc(), RuntimeSession.id.asc())
        )
    )


def list_closed_sessions_overlapping(
    db: Session,
    *,
    device_key: str,
    from_ts: datetime,
    to_ts: datetime,
) -> list[RuntimeSession]:
    return list(
        db.scalars(
            select(RuntimeSession)
            .where(
                RuntimeSession.device_key == device_key,
                RuntimeSession.ended_at.is_not(None),
                RuntimeSession.ended_at > from_ts,
                RuntimeSession.started_at < to_ts,
            )
            .order_by(RuntimeSession.started_at.asc(), RuntimeSession.id.asc())
        )
    )
