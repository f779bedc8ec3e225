from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session, sessionmaker

from filterhours.core.config import Settings
from filterhours.db.models import DailySummary, Device
from filterhours.repositories.devices import list_devices
from filterhours.repositories.events import (
    get_last_thermostat_setting_event_before,
    get_next_thermostat_setting_change,
    list_events_between,
    list_thermostat_setting_events,
)
from filterhours.repositories.sessions import list_closed_sessions_started_between
from filterhours.repositories.summaries import get_daily_summary
from filterhours.services.status_classifier import HvacMode, ThermostatSetting
from filterhours.services.worker_runs import WorkerOutcome, WorkerRunResult, run_worker

WORKER_NAME = "daily_summary"

_logger = logging.getLogger("filterhours.daily_summary")

SESSION_MODE_FIELDS: dict[str, str] = {
    HvacMode.HEAT.value: "runtime_seconds_heat",
    HvacMode.COOL.value: "runtime_seconds_cool",
    HvacMode.FAN.value: "runtime_seconds_fan",
    HvacMode.AUXHEAT.value: "runtime_seconds_auxheat",
    HvacMode.UNKNOWN.value: "runtime_seconds_unknown",
}

THERMOSTAT_SETTING_FIELDS: dict[str, str] = {
    setting.value: f"runtime_seconds_mode_{setting.value}" for setting in ThermostatSetting
}

# Runtime fields the validator overwrites when it corrects a day.
VALIDATOR_OWNED_FIELDS: tuple[str, ...] = (
    "runtime_seconds_total",
    "runtime_seconds_heat",
    "runtime_seconds_cool",
    "runtime_seconds_auxheat",
    "runtime_seconds_fan",
)


def resolve_timezone(name: str | None, *, device_key: str | None = None) -> tzinfo:
    """IANA zone for a device, UTC when unset or unknown."""
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        _logger.warning("invalid device timezone, using UTC device_key=%s timezone=%s", device_key, name)
        return timezone.utc


def local_day_bounds(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def trailing_dates(today: date, days: int) -> list[date]:
    days = max(1, days)
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def is_plausible_temperature(value: float, settings: Settings) -> bool:
    return value > 0 and settings.temperature_min_f <= value <= settings.temperature_max_f


class DailySummaryService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = _logger

    def run_once(self, now: datetime | None = None, dates: Iterable[date] | None = None) -> WorkerRunResult:
        explicit_dates = sorted(set(dates)) if dates is not None else None
        return run_worker(
            session_factory=self._session_factory,
            worker_name=WORKER_NAME,
            fn=lambda db: self.aggregate(db, now=now, dates=explicit_dates),
        )

    def aggregate(
        self,
        db: Session,
        *,
        now: datetime | None = None,
        dates: list[date] | None = None,
    ) -> WorkerOutcome:
        now = now or self._clock()
        counts = {"created": 0, "updated": 0, "unchanged": 0, "skipped": 0}
        devices = list_devices(db)
        for device in devices:
            tz = resolve_timezone(device.timezone, device_key=device.device_key)
            target_dates = dates
            if target_dates is None:
                local_today = now.astimezone(tz).date()
                target_dates = trailing_dates(local_today, self._settings.summary_lookback_days)
            for day in target_dates:
                outcome = self.summarize_device_day(db, device=device, tz=tz, day=day, now=now)
                counts[outcome] += 1

        self._logger.info(
            "daily summaries complete devices=%s created=%s updated=%s unchanged=%s skipped=%s",
            len(devices),
            counts["created"],
            counts["updated"],
            counts["unchanged"],
            counts["skipped"],
        )
        return WorkerOutcome(devices_processed=len(devices), details=counts)

    def summarize_device_day(
        self,
        db: Session,
        *,
        device: Device,
        tz: tzinfo,
        day: date,
        now: datetime,
    ) -> str:
        """Upsert one device-day. Returns created, updated, unchanged or skipped."""
        day_start, day_end = local_day_bounds(day, tz)
        computed, has_data = self.compute_day(
            db,
            device_key=device.device_key,
            day_start=day_start,
            day_end=day_end,
        )

        existing = get_daily_summary(db, device_key=device.device_key, summary_date=day)
        if existing is None:
            if not has_data:
                return "skipped"
            db.add(DailySummary(device_key=device.device_key, date=day, updated_at=now, **computed))
            db.flush()
            return "created"

        changes = self._pending_changes(existing, computed)
        if not changes:
            return "unchanged"
        for field_name, value in changes.items():
            setattr(existing, field_name, value)
        existing.updated_at = now
        db.flush()
        return "updated"

    def compute_day(
        self,
        db: Session,
        *,
        device_key: str,
        day_start: datetime,
        day_end: datetime,
    ) -> tuple[dict[str, Any], bool]:
        values: dict[str, Any] = {field_name: 0 for field_name in SESSION_MODE_FIELDS.values()}
        values.update({field_name: 0 for field_name in THERMOSTAT_SETTING_FIELDS.values()})

        # Sessions belong to the local day they started on.
        sessions = list_closed_sessions_started_between(
            db,
            device_key=device_key,
            from_ts=day_start,
            to_ts=day_end,
        )
        total = 0
        for session in sessions:
            seconds = int(session.runtime_seconds or 0)
            field_name = SESSION_MODE_FIELDS.get(session.mode, SESSION_MODE_FIELDS[HvacMode.UNKNOWN.value])
            values[field_name] += seconds
            total += seconds
        values["runtime_seconds_total"] = total
        values["runtime_sessions_count"] = len(sessions)

        setting_seconds = self._thermostat_setting_seconds(
            db,
            device_key=device_key,
            day_start=day_start,
            day_end=day_end,
        )
        for setting, seconds in setting_seconds.items():
            values[THERMOSTAT_SETTING_FIELDS[setting]] += seconds

        temperatures: list[float] = []
        humidities: list[float] = []
        for event in list_events_between(db, device_key=device_key, from_ts=day_start, to_ts=day_end):
            if event.temperature_f is not None and self._plausible_temperature(event.temperature_f):
                temperatures.append(float(event.temperature_f))
            if event.humidity is not None and 0.0 < event.humidity <= 100.0:
                humidities.append(float(event.humidity))
        values["avg_temperature"] = _rounded_mean(temperatures)
        values["avg_humidity"] = _rounded_mean(humidities)

        has_data = bool(sessions or temperatures or humidities or any(setting_seconds.values()))
        return values, has_data

    def _thermostat_setting_seconds(
        self,
        db: Session,
        *,
        device_key: str,
        day_start: datetime,
        day_end: datetime,
    ) -> dict[str, int]:
        """Seconds each thermostat setting was in effect within the day.

        A setting runs from its change event to the next change; the latest
        setting with no following change contributes nothing yet.
        """
        changes: list[tuple[datetime, str]] = []
        prior = get_last_thermostat_setting_event_before(db, device_key=device_key, before_ts=day_start)
        if prior is not None:
            changes.append((prior.recorded_at, prior.thermostat_setting))
        for event in list_thermostat_setting_events(db, device_key=device_key, from_ts=day_start, to_ts=day_end):
            if changes and changes[-1][1] == event.thermostat_setting:
                continue
            changes.append((event.recorded_at, event.thermostat_setting))

        seconds: dict[str, int] = {}
        if not changes:
            return seconds

        for index, (started_at, setting) in enumerate(changes):
            if index + 1 < len(changes):
                ended_at = changes[index + 1][0]
            else:
                following = get_next_thermostat_setting_change(
                    db,
                    device_key=device_key,
                    from_ts=day_end,
                    current_setting=setting,
                )
                if following is None:
                    continue
                ended_at = following.recorded_at
            clipped = (min(ended_at, day_end) - max(started_at, day_start)).total_seconds()
            if clipped <= 0:
                continue
            key = setting if setting in THERMOSTAT_SETTING_FIELDS else ThermostatSetting.OTHER.value
            seconds[key] = seconds.get(key, 0) + int(round(clipped))
        return seconds

    def _plausible_temperature(self, value: float) -> bool:
        return is_plausible_temperature(value, self._settings)

    def _pending_changes(self, existing: DailySummary, computed: dict[str, Any]) -> dict[str, Any]:
        target = dict(computed)
        if existing.is_corrected:
            if computed["runtime_seconds_total"] == existing.precorrection_runtime_seconds_total:
                for field_name in VALIDATOR_OWNED_FIELDS:
                    target.pop(field_name)
            else:
                self._logger.info(
                    "computed runtime changed, clearing correction device_key=%s date=%s "
                    "precorrection_total=%s computed_total=%s",
                    existing.device_key,
                    existing.date.isoformat(),
                    existing.precorrection_runtime_seconds_total,
                    computed["runtime_seconds_total"],
                )
                target["is_corrected"] = False
                target["corrected_at"] = None
                target["precorrection_runtime_seconds_total"] = None
        return {
            field_name: value
            for field_name, value in target.items()
            if getattr(existing, field_name) != value
        }


def _rounded_mean(values: list[float]) -> float | None:
    if not values:
        return None
    return round(sum(values) / len(values), 2)
