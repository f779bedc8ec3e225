from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from filterhours.db.models import Device, DeviceState


def get_device(db: Session, device_key: str) -> Device | None:
    return db.get(Device, device_key)


def list_devices(db: Session) -> list[Device]:
    return list(db.scalars(select(Device).order_by(Device.device_key)))


def list_device_keys(db: Session) -> list[str]:
    return list(db.scalars(select(Device.device_key).order_by(Device.device_key)))


def ensure_device(
    db: Session,
    *,
    device_key: str,
    default_filter_target_hours: float,
    vendor_device_id: str | None = None,
    timezone: str | None = None,
    region_prefix: str | None = None,
) -> tuple[Device, bool]:
    device = db.get(Device, device_key)
    if device is not None:
        return device, False

    device = Device(
        device_key=device_key,
        vendor_device_id=vendor_device_id,
        timezone=timezone,
        region_prefix=region_prefix,
        filter_target_hours=default_filter_target_hours,
        use_forced_air_for_heat=False,
        filter_usage_percent=0,
    )
    db.add(device)
    db.add(DeviceState(device_key=device_key, is_active=False, hours_used_total=0.0, filter_hours_used=0.0))
    db.flush()
    return device, True


def lock_device_state(db: Session, device_key: str) -> DeviceState:
    """Fetch the device's state row with a row lock, creating it if missing.

    The state row is the unit of mutual exclusion between concurrent runs
    touching the same device.
    """
    state = db.scalars(
        select(DeviceState).where(DeviceState.device_key == device_key).with_for_update()
    ).first()
    if state is not None:
        return state

    state = DeviceState(device_key=device_key, is_active=False, hours_used_total=0.0, filter_hours_used=0.0)
    db.add(state)
    db.flush()
    return state


def mark_device_seen(db: Session, *, device_key: str, seen_at: datetime) -> None:
    state = db.get(DeviceState, device_key)
    if state is None:
        state = lock_device_state(db, device_key)
    if state.last_seen_at is None or seen_at > state.last_seen_at:
        state.last_seen_at = seen_at
        state.is_reachable = True


def list_unreachable_candidates(db: Session, *, seen_before: datetime) -> list[DeviceState]:
    return list(
        db.scalars(
            select(DeviceState)
            .where(
                DeviceState.is_reachable.is_(True),
                DeviceState.last_seen_at.is_not(None),
                DeviceState.last_seen_at < seen_before,
            )
            .order_by(DeviceState.device_key.asc())
        )
    )
