from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from filterhours.core.config import Settings
from filterhours.db.models import HourlySummary
from filterhours.repositories.devices import list_device_keys
from filterhours.repositories.events import list_events_between
from filterhours.repositories.sessions import list_closed_sessions_overlapping
from filterhours.repositories.summaries import list_hourly_summaries
from filterhours.services.daily_summary import is_plausible_temperature
from filterhours.services.worker_runs import WorkerOutcome, WorkerRunResult, run_worker

WORKER_NAME = "hourly_summary"

ONE_HOUR = timedelta(hours=1)


def hour_floor(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


class HourlySummaryService:
    """Per-device UTC hour buckets of runtime and temperature.

    Unlike the daily rollup, a session is split across every hour it
    overlaps, so no hour holds more than 3600 seconds.
    """

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
        self._logger = logging.getLogger("filterhours.hourly_summary")

    def run_once(self, now: datetime | None = None) -> WorkerRunResult:
        return run_worker(
            session_factory=self._session_factory,
            worker_name=WORKER_NAME,
            fn=lambda db: self.aggregate(db, now=now),
        )

    def aggregate(self, db: Session, *, now: datetime | None = None) -> WorkerOutcome:
        now = now or self._clock()
        window_end = hour_floor(now) + ONE_HOUR
        window_start = window_end - ONE_HOUR * self._settings.hourly_lookback_hours

        counts = {"created": 0, "updated": 0, "unchanged": 0}
        device_keys = list_device_keys(db)
        for device_key in device_keys:
            for outcome in self.summarize_device(
                db,
                device_key=device_key,
                window_start=window_start,
                window_end=window_end,
                now=now,
            ):
                counts[outcome] += 1

        self._logger.info(
            "hourly summaries complete devices=%s window_start=%s created=%s updated=%s unchanged=%s",
            len(device_keys),
            window_start.isoformat(),
            counts["created"],
            counts["updated"],
            counts["unchanged"],
        )
        return WorkerOutcome(devices_processed=len(device_keys), details=counts)

    def summarize_device(
        self,
        db: Session,
        *,
        device_key: str,
        window_start: datetime,
        window_end: datetime,
        now: datetime,
    ) -> list[str]:
        runtime: dict[datetime, int] = defaultdict(int)
        session_counts: dict[datetime, int] = defaultdict(int)
        for session in list_closed_sessions_overlapping(
            db,
            device_key=device_key,
            from_ts=window_start,
            to_ts=window_end,
        ):
            hour = max(hour_floor(session.started_at), window_start)
            last_hour_end = min(session.ended_at, window_end)
            while hour < last_hour_end:
                next_hour = hour + ONE_HOUR
                seconds = (min(session.ended_at, next_hour) - max(session.started_at, hour)).total_seconds()
                if seconds > 0:
                    runtime[hour] += int(round(seconds))
                    session_counts[hour] += 1
                hour = next_hour

        temperatures: dict[datetime, list[float]] = defaultdict(list)
        for event in list_events_between(db, device_key=device_key, from_ts=window_start, to_ts=window_end):
            if event.temperature_f is not None and is_plausible_temperature(event.temperature_f, self._settings):
                temperatures[hour_floor(event.recorded_at)].append(float(event.temperature_f))

        existing = {
            row.summary_hour: row
            for row in list_hourly_summaries(db, device_key=device_key, from_hour=window_start, to_hour=window_end)
        }
        outcomes: list[str] = []
        for hour in sorted(set(runtime) | set(temperatures) | set(existing)):
            computed = _hour_values(runtime.get(hour, 0), session_counts.get(hour, 0), temperatures.get(hour, []))
            row = existing.get(hour)
            if row is None:
                db.add(HourlySummary(device_key=device_key, summary_hour=hour, updated_at=now, **computed))
                outcomes.append("created")
                continue
            changes = {name: value for name, value in computed.items() if getattr(row, name) != value}
            if not changes:
                outcomes.append("unchanged")
                continue
            for name, value in changes.items():
                setattr(row, name, value)
            row.updated_at = now
            outcomes.append("updated")
        db.flush()
        return outcomes


def _hour_values(runtime_seconds: int, sessions_count: int, temperatures: list[float]) -> dict[str, Any]:
    values: dict[str, Any] = {
        "runtime_seconds_total": runtime_seconds,
        "runtime_sessions_count": sessions_count,
        "avg_temperature": None,
        "min_temperature": None,
        "max_temperature": None,
    }
    if temperatures:
        values["avg_temperature"] = round(sum(temperatures) / len(temperatures), 2)
        values["min_temperature"] = round(min(temperatures), 2)
        values["max_temperature"] = round(max(temperatures), 2)
    return values
