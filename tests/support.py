from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from filterhours.core.config import Settings
from filterhours.db.models import DailySummary, Device, RuntimeSession
from filterhours.db.session import build_engine, build_session_factory, init_schema
from filterhours.repositories.devices import ensure_device
from filterhours.repositories.events import record_equipment_events
from filterhours.schemas.events import EquipmentEventIn


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


def build_test_store(**setting_overrides: Any) -> tuple[Settings, sessionmaker]:
    overrides: dict[str, Any] = {"database_url": "sqlite://", "scheduler_enabled": False}
    overrides.update(setting_overrides)
    settings = Settings(**overrides)
    engine = build_engine(settings)
    init_schema(engine)
    return settings, build_session_factory(engine)


def add_device(
    db: Session,
    device_key: str,
    *,
    timezone_name: str | None = None,
    region_prefix: str | None = None,
    use_forced_air_for_heat: bool = False,
    filter_target_hours: float = 100.0,
) -> Device:
    device, _ = ensure_device(
        db,
        device_key=device_key,
        default_filter_target_hours=filter_target_hours,
        timezone=timezone_name,
        region_prefix=region_prefix,
    )
    device.use_forced_air_for_heat = use_forced_air_for_heat
    db.flush()
    return device


def add_event(db: Session, device_key: str, recorded_at: datetime, **fields: Any) -> None:
    payload = EquipmentEventIn(device_key=device_key, recorded_at=recorded_at, **fields)
    record_equipment_events(db, [payload], default_filter_target_hours=100.0)


def add_closed_session(
    db: Session,
    device_key: str,
    *,
    started_at: datetime,
    ended_at: datetime,
    mode: str = "cool",
    fan_assisted: bool = False,
) -> RuntimeSession:
    session = RuntimeSession(
        device_key=device_key,
        mode=mode,
        equipment_status=mode,
        fan_assisted=fan_assisted,
        started_at=started_at,
        ended_at=ended_at,
        runtime_seconds=int((ended_at - started_at).total_seconds()),
        tick_count=1,
        last_tick_at=ended_at,
        terminated_reason="tail_close",
    )
    db.add(session)
    db.flush()
    return session


def add_summary(
    db: Session,
    device_key: str,
    summary_date: date,
    *,
    runtime_seconds_total: int,
    updated_at: datetime,
    **fields: Any,
) -> DailySummary:
    summary = DailySummary(
        device_key=device_key,
        date=summary_date,
        runtime_seconds_total=runtime_seconds_total,
        runtime_seconds_heat=fields.pop("runtime_seconds_heat", 0),
        runtime_seconds_cool=fields.pop("runtime_seconds_cool", runtime_seconds_total),
        runtime_seconds_fan=fields.pop("runtime_seconds_fan", 0),
        runtime_seconds_auxheat=fields.pop("runtime_seconds_auxheat", 0),
        runtime_seconds_unknown=0,
        runtime_sessions_count=fields.pop("runtime_sessions_count", 1),
        is_corrected=False,
        updated_at=updated_at,
        **fields,
    )
    db.add(summary)
    db.flush()
    return summary
