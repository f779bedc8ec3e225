from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import date, datetime, timezone

from sqlalchemy.orm import Session, sessionmaker

from filterhours.core.config import Settings
from filterhours.repositories.devices import list_devices
from filterhours.repositories.region_averages import (
    delete_region_average,
    list_region_averages,
    upsert_region_average,
)
from filterhours.repositories.summaries import RegionSummaryRow, list_summaries_with_region
from filterhours.services.daily_summary import resolve_timezone, trailing_dates
from filterhours.services.region_sync import RegionAveragePayload, RegionSyncClient
from filterhours.services.worker_runs import WorkerOutcome, WorkerRunResult, run_worker

WORKER_NAME = "region_aggregation"


class RegionAggregationService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        sync_client: RegionSyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._sync_client = sync_client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logging.getLogger("filterhours.region_aggregation")

    def run_once(self, now: datetime | None = None) -> WorkerRunResult:
        upserted: list[RegionAveragePayload] = []
        result = run_worker(
            session_factory=self._session_factory,
            worker_name=WORKER_NAME,
            fn=lambda db: self.aggregate(db, now=now, upserted=upserted),
        )
        # Only committed rows are pushed downstream.
        if result.success and upserted and self._sync_client is not None:
            self._sync_client.push(upserted)
        return result

    def aggregate(
        self,
        db: Session,
        *,
        now: datetime | None = None,
        upserted: list[RegionAveragePayload] | None = None,
    ) -> WorkerOutcome:
        now = now or self._clock()
        window: dict[str, set[date]] = {}
        from_date: date | None = None
        excluded_devices = 0
        for device in list_devices(db):
            tz = resolve_timezone(device.timezone, device_key=device.device_key)
            dates = trailing_dates(now.astimezone(tz).date(), self._settings.region_lookback_days)
            from_date = dates[0] if from_date is None else min(from_date, dates[0])
            if not device.region_prefix:
                excluded_devices += 1
                continue
            window[device.device_key] = set(dates)

        if excluded_devices:
            self._logger.info("devices without region excluded count=%s", excluded_devices)
        if from_date is None:
            return WorkerOutcome(
                devices_processed=0,
                details={"regions": 0, "rows_upserted": 0, "rows_deleted": 0, "excluded_devices": 0},
            )

        groups: dict[tuple[str, date], list[RegionSummaryRow]] = defaultdict(list)
        reported: set[tuple[str, date]] = set()
        for row in list_summaries_with_region(db, from_date=from_date):
            if row.region_prefix is None:
                continue
            reported.add((row.region_prefix, row.date))
            if row.date not in window.get(row.device_key, ()):
                continue
            groups[(row.region_prefix, row.date)].append(row)

        for (region_prefix, summary_date), rows in sorted(groups.items()):
            average = upsert_region_average(
                db,
                region_prefix=region_prefix,
                summary_date=summary_date,
                avg_runtime_seconds=_mean([float(row.runtime_seconds_total) for row in rows]),
                avg_temperature=_mean([row.avg_temperature for row in rows if row.avg_temperature is not None]),
                avg_humidity=_mean([row.avg_humidity for row in rows if row.avg_humidity is not None]),
                sample_size=len({row.device_key for row in rows}),
                updated_at=now,
            )
            if upserted is not None:
                upserted.append(
                    RegionAveragePayload(
                        region_prefix=average.region_prefix,
                        date=average.date,
                        avg_runtime_seconds=average.avg_runtime_seconds,
                        avg_temperature=average.avg_temperature,
                        avg_humidity=average.avg_humidity,
                        sample_size=average.sample_size,
                        updated_at=average.updated_at,
                    )
                )

        # A region/date whose devices all moved away or lost their summaries is removed.
        rows_deleted = 0
        for average in list_region_averages(db, from_date=from_date):
            if (average.region_prefix, average.date) in reported:
                continue
            self._logger.info(
                "region average without contributors deleted region_prefix=%s date=%s",
                average.region_prefix,
                average.date.isoformat(),
            )
            delete_region_average(db, average)
            rows_deleted += 1

        regions = {region_prefix for region_prefix, _ in groups}
        self._logger.info(
            "region averages complete regions=%s rows_upserted=%s rows_deleted=%s devices=%s excluded_devices=%s",
            len(regions),
            len(groups),
            rows_deleted,
            len(window),
            excluded_devices,
        )
        return WorkerOutcome(
            devices_processed=len(window),
            details={
                "regions": len(regions),
                "rows_upserted": len(groups),
                "rows_deleted": rows_deleted,
                "excluded_devices": excluded_devices,
            },
        )


def _mean(values: list[float]) -> float | None:
    if not values:
        return None
    return round(sum(values) / len(values), 2)
