from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from filterhours.db.models import EquipmentEvent
from filterhours.repositories.devices import ensure_device, mark_device_seen
from filterhours.schemas.events import EquipmentEventIn
from filterhours.services.status_classifier import classify_status, classify_thermostat_setting


def create_equipment_event(db: Session, payload: EquipmentEventIn) -> EquipmentEvent | None:
    if payload.source_event_id is not None:
        existing = db.scalars(
            select(EquipmentEvent.id).where(EquipmentEvent.source_event_id == payload.source_event_id)
        ).first()
        if existing is not None:
            return None

    # A posted runtime describes the interval that just ended, which is what
    # previous_status names when the vendor supplies it.
    status_for_mode = payload.equipment_status
    if payload.runtime_seconds is not None and payload.runtime_seconds > 0:
        status_for_mode = payload.previous_status or payload.equipment_status
    classification = classify_status(status_for_mode)
    setting = classify_thermostat_setting(payload.thermostat_mode)

    event = EquipmentEvent(
        device_key=payload.device_key,
        source_event_id=payload.source_event_id,
        equipment_status=payload.equipment_status,
        previous_status=payload.previous_status,
        is_active=payload.is_active,
        runtime_seconds=payload.runtime_seconds,
        thermostat_mode=payload.thermostat_mode,
        thermostat_setting=setting.value if setting is not None else None,
        temperature_f=payload.temperature_f,
        humidity=payload.humidity,
        hvac_mode=classification.mode.value,
        fan_assisted=classification.fan_assisted,
        recorded_at=payload.recorded_at,
    )
    db.add(event)
    db.flush()
    return event


def list_events_after(
    db: Session,
    *,
    device_key: str,
    after_ts: datetime | None,
) -> list[EquipmentEvent]:
    query = select(EquipmentEvent).where(EquipmentEvent.device_key == device_key)
    if after_ts is not None:
        query = query.where(EquipmentEvent.recorded_at > after_ts)
    return list(db.scalars(query.order_by(EquipmentEvent.recorded_at.asc(), EquipmentEvent.id.asc())))


def list_events_between(
    db: Session,
    *,
    device_key: str,
    from_ts: datetime,
    to_ts: datetime,
) -> list[EquipmentEvent]:
    return list(
        db.scalars(
            select(EquipmentEvent)
            .where(
                EquipmentEvent.device_key == device_key,
                EquipmentEvent.recorded_at >= from_ts,
                EquipmentEvent.recorded_at < to_ts,
            )
            .order_by(EquipmentEvent.recorded_at.asc(), EquipmentEvent.id.asc())
        )
    )


def list_thermostat_setting_events(
    db: Session,
    *,
    device_key: str,
    from_ts: datetime,
    to_ts: datetime,
) -> list[EquipmentEvent]:
    return list(
        db.scalars(
            select(EquipmentEvent)
            .where(
                EquipmentEvent.device_key == device_key,
                EquipmentEvent.thermostat_setting.is_not(None),
                EquipmentEvent.recorded_at >= from_ts,
                EquipmentEvent.recorded_at < to_ts,
            )
            .order_by(EquipmentEvent.recorded_at.asc(), EquipmentEvent.id.asc())
        )
    )


def get_last_thermostat_setting_event_before(
    db: Session,
    *,
    device_key: str,
    before_ts: datetime,
) -> EquipmentEvent | None:
    return db.scalars(
        select(EquipmentEvent)
        .where(
            EquipmentEvent.device_key == device_key,
            EquipmentEvent.thermostat_setting.is_not(None),
            EquipmentEvent.recorded_at < before_ts,
        )
        .order_by(EquipmentEvent.recorded_at.desc(), EquipmentEvent.id.desc())
        .limit(1)
    ).first()


def get_next_thermostat_setting_change(
    db: Session,
    *,
    device_key: str,
    from_ts: datetime,
    current_setting: str,
) -> EquipmentEvent | None:
    return db.scalars(
        select(EquipmentEvent)
        .where(
            EquipmentEvent.device_key == device_key,
            EquipmentEvent.thermostat_setting.is_not(None),
            EquipmentEvent.thermostat_setting != current_setting,
            EquipmentEvent.recorded_at >= from_ts,
        )
        .order_by(EquipmentEvent.recorded_at.asc(), EquipmentEvent.id.asc())
        .limit(1)
    ).first()


def record_equipment_events(
    db: Session,
    payloads: list[EquipmentEventIn],
    *,
    default_filter_target_hours: float,
) -> list[EquipmentEvent]:
    """Append validated events, creating unknown devices on first sight."""
    created: list[EquipmentEvent] = []
    for payload in payloads:
        ensure_device(
            db,
            device_key=payload.device_key,
            default_filter_target_hours=default_filter_target_hours,
            vendor_device_id=payload.vendor_device_id,
            timezone=payload.timezone,
            region_prefix=payload.region_prefix,
        )
        event = create_equipment_event(db, payload)
        if event is not None:
            mark_device_seen(db, device_key=payload.device_key, seen_at=payload.recorded_at)
            created.append(event)
    return created
