from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session, sessionmaker

from filterhours.core.config import Settings
from filterhours.db.column_types import to_utc
from filterhours.db.models import Device, DeviceState, FilterReset, RuntimeSession
from filterhours.repositories.devices import get_device, list_devices, lock_device_state
from filterhours.repositories.sessions import list_closed_sessions_ending_after
from filterhours.schemas.events import DeviceConfigUpdate
from filterhours.services.status_classifier import (
    HvacMode,
    StatusClassification,
    counts_toward_filter,
)


class DeviceNotFoundError(LookupError):
    def __init__(self, device_key: str):
        self.device_key = device_key
        super().__init__(f"unknown device {device_key}")


@dataclass(frozen=True)
class SessionCredit:
    total_seconds: int
    filter_seconds: int
    counted: bool


class FilterUsageService:
    def __init__(self, *, settings: Settings, session_factory: sessionmaker | None = None):
        self._settings = settings
        self._session_factory = session_factory
        self._logger = logging.getLogger("filterhours.filter_usage")

    def apply_session(
        self,
        db: Session,
        *,
        device: Device,
        state: DeviceState,
        session: RuntimeSession,
    ) -> SessionCredit:
        """Credit a closed session to the device's lifetime and filter counters."""
        if session.ended_at is None or session.runtime_seconds is None:
            raise ValueError(f"session {session.id} is still open")

        classification = session_classification(session)
        counted = counts_toward_filter(
            classification,
            use_forced_air_for_heat=bool(device.use_forced_air_for_heat),
        )
        total_seconds = max(0, int(session.runtime_seconds))
        filter_seconds = 0
        if counted:
            filter_seconds = filter_seconds_for_interval(
                started_at=session.started_at,
                ended_at=session.ended_at,
                last_reset_ts=state.last_reset_ts,
            )

        state.hours_used_total = float(state.hours_used_total or 0.0) + total_seconds / 3600.0
        state.filter_hours_used = float(state.filter_hours_used or 0.0) + filter_seconds / 3600.0
        device.filter_usage_percent = compute_usage_percent(
            filter_hours_used=state.filter_hours_used,
            filter_target_hours=device.filter_target_hours,
        )
        self._logger.debug(
            "credited session device_key=%s session_id=%s mode=%s total_seconds=%s filter_seconds=%s",
            device.device_key,
            session.id,
            session.mode,
            total_seconds,
            filter_seconds,
        )
        return SessionCredit(total_seconds=total_seconds, filter_seconds=filter_seconds, counted=counted)

    def recalculate_filter_hours(self, db: Session, *, device_key: str) -> float:
        """Rebuild filter_hours_used from closed sessions under the current policy flag."""
        device = get_device(db, device_key)
        if device is None:
            raise DeviceNotFoundError(device_key)
        state = lock_device_state(db, device_key)

        filter_seconds = 0
        sessions = list_closed_sessions_ending_after(
            db,
            device_key=device_key,
            after_ts=state.last_reset_ts,
        )
        for session in sessions:
            if not counts_toward_filter(
                session_classification(session),
                use_forced_air_for_heat=bool(device.use_forced_air_for_heat),
            ):
                continue
            filter_seconds += filter_seconds_for_interval(
                started_at=session.started_at,
                ended_at=session.ended_at,
                last_reset_ts=state.last_reset_ts,
            )

        previous_hours = float(state.filter_hours_used or 0.0)
        state.filter_hours_used = filter_seconds / 3600.0
        device.filter_usage_percent = compute_usage_percent(
            filter_hours_used=state.filter_hours_used,
            filter_target_hours=device.filter_target_hours,
        )
        db.flush()
        self._logger.info(
            "recalculated filter hours device_key=%s sessions=%s previous_hours=%.3f filter_hours=%.3f",
            device_key,
            len(sessions),
            previous_hours,
            state.filter_hours_used,
        )
        return state.filter_hours_used

    def reset_filter(
        self,
        db: Session,
        *,
        device_key: str,
        at: datetime | None = None,
        source: str = "manual",
    ) -> FilterReset:
        device = get_device(db, device_key)
        if device is None:
            raise DeviceNotFoundError(device_key)
        state = lock_device_state(db, device_key)
        reset_ts = to_utc(at) if at is not None else datetime.now(timezone.utc)

        reset = FilterReset(
            device_key=device_key,
            triggered_at=reset_ts,
            source=source,
            filter_hours_at_reset=float(state.filter_hours_used or 0.0),
        )
        db.add(reset)
        state.last_reset_ts = reset_ts
        state.filter_hours_used = 0.0
        device.filter_usage_percent = 0
        db.flush()
        self._logger.info(
            "filter reset device_key=%s source=%s reset_ts=%s filter_hours_at_reset=%.3f",
            device_key,
            source,
            reset_ts.isoformat(),
            reset.filter_hours_at_reset,
        )
        return reset

    def update_device_config(
        self,
        db: Session,
        *,
        device_key: str,
        update: DeviceConfigUpdate,
    ) -> Device:
        device = get_device(db, device_key)
        if device is None:
            raise DeviceNotFoundError(device_key)

        changes = update.model_dump(exclude_unset=True)
        policy_changed = (
            "use_forced_air_for_heat" in changes
            and changes["use_forced_air_for_heat"] is not None
            and bool(changes["use_forced_air_for_heat"]) != bool(device.use_forced_air_for_heat)
        )
        target_changed = (
            "filter_target_hours" in changes
            and changes["filter_target_hours"] is not None
            and float(changes["filter_target_hours"]) != float(device.filter_target_hours)
        )

        for key, value in changes.items():
            if key in ("use_forced_air_for_heat", "filter_target_hours") and value is None:
                continue
            setattr(device, key, value)
        db.flush()

        if policy_changed:
            # Historical sessions are re-evaluated under the new rule.
            self.recalculate_filter_hours(db, device_key=device_key)
        elif target_changed:
            state = lock_device_state(db, device_key)
            device.filter_usage_percent = compute_usage_percent(
                filter_hours_used=state.filter_hours_used,
                filter_target_hours=device.filter_target_hours,
            )
            db.flush()
        return device

    def refresh_usage_percentages(self, db: Session) -> int:
        """Re-derive every cached percentage from its counters; returns rows changed."""
        changed = 0
        for device in list_devices(db):
            state = device.state
            filter_hours = float(state.filter_hours_used or 0.0) if state is not None else 0.0
            percent = compute_usage_percent(
                filter_hours_used=filter_hours,
                filter_target_hours=device.filter_target_hours,
            )
            if device.filter_usage_percent != percent:
                self._logger.info(
                    "filter usage percent drift corrected device_key=%s cached=%s computed=%s",
                    device.device_key,
                    device.filter_usage_percent,
                    percent,
                )
                device.filter_usage_percent = percent
                changed += 1
        db.flush()
        return changed

    def reset(self, *, device_key: str, at: datetime | None = None, source: str = "manual") -> FilterReset:
        with self._require_session_factory()() as db:
            reset = self.reset_filter(db, device_key=device_key, at=at, source=source)
            db.commit()
            return reset

    def configure(self, *, device_key: str, update: DeviceConfigUpdate) -> Device:
        with self._require_session_factory()() as db:
            device = self.update_device_config(db, device_key=device_key, update=update)
            db.commit()
            return device

    def _require_session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("FilterUsageService was built without a session factory")
        return self._session_factory


def session_classification(session: RuntimeSession) -> StatusClassification:
    try:
        mode = HvacMode(session.mode)
    except ValueError:
        mode = HvacMode.UNKNOWN
    return StatusClassification(mode=mode, fan_assisted=bool(session.fan_assisted))


def filter_seconds_for_interval(
    *,
    started_at: datetime,
    ended_at: datetime,
    last_reset_ts: datetime | None,
) -> int:
    """Seconds of [started_at, ended_at] that fall after the last filter reset."""
    effective_start = started_at
    if last_reset_ts is not None and last_reset_ts > started_at:
        effective_start = last_reset_ts
    return max(0, int(round((ended_at - effective_start).total_seconds())))


def compute_usage_percent(*, filter_hours_used: float | None, filter_target_hours: float | None) -> int:
    target = float(filter_target_hours or 0.0)
    if target <= 0.0:
        return 0
    ratio_percent = max(0.0, float(filter_hours_used or 0.0)) / target * 100.0
    return min(100, int(math.floor(ratio_percent + 0.5)))
