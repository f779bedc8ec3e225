from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session, sessionmaker

from filterhours.core.config import Settings
from filterhours.db.models import Device
from filterhours.repositories.devices import list_devices, lock_device_state
from filterhours.repositories.predictions import delete_filter_prediction, upsert_filter_prediction
from filterhours.repositories.region_averages import mean_region_runtime_since
from filterhours.repositories.summaries import sum_runtime_since
from filterhours.services.daily_summary import resolve_timezone
from filterhours.services.worker_runs import WorkerOutcome, WorkerRunResult, run_worker

WORKER_NAME = "filter_prediction"


@dataclass(frozen=True)
class FilterHealth:
    expected_life_seconds: float
    predicted_health_percent: int
    is_anomalous: bool


def predict_filter_health(
    *,
    runtime_since_reset_seconds: int,
    region_avg_runtime_seconds: float | None,
    expected_multiplier: float,
    fallback_life_seconds: float,
) -> FilterHealth:
    """Rule-based health estimate from runtime since the last reset.

    Expected life is the regional average runtime times the multiplier, or the
    fallback when the region has no average. Runtime beyond twice the
    expected life is anomalous.
    """
    has_region = region_avg_runtime_seconds is not None and region_avg_runtime_seconds > 0
    expected_life = region_avg_runtime_seconds * expected_multiplier if has_region else fallback_life_seconds
    health = min(1.0, max(0.0, 1.0 - runtime_since_reset_seconds / expected_life))
    return FilterHealth(
        expected_life_seconds=expected_life,
        predicted_health_percent=int(math.floor(health * 100 + 0.5)),
        is_anomalous=bool(has_region and runtime_since_reset_seconds > 2 * expected_life),
    )


class FilterPredictionService:
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
        self._logger = logging.getLogger("filterhours.filter_prediction")

    def run_once(self, now: datetime | None = None) -> WorkerRunResult:
        return run_worker(
            session_factory=self._session_factory,
            worker_name=WORKER_NAME,
            fn=lambda db: self.predict_all(db, now=now),
        )

    def predict_all(self, db: Session, *, now: datetime | None = None) -> WorkerOutcome:
        now = now or self._clock()
        predicted = 0
        anomalous = 0
        skipped = 0
        devices = list_devices(db)
        for device in devices:
            health = self.predict_device(db, device=device, now=now)
            if health is None:
                skipped += 1
                continue
            predicted += 1
            if health.is_anomalous:
                anomalous += 1

        self._logger.info(
            "filter predictions complete devices=%s predicted=%s anomalous=%s skipped=%s",
            len(devices),
            predicted,
            anomalous,
            skipped,
        )
        return WorkerOutcome(
            devices_processed=predicted,
            details={"predicted": predicted, "anomalous": anomalous, "skipped": skipped},
        )

    def predict_device(self, db: Session, *, device: Device, now: datetime) -> FilterHealth | None:
        tz = resolve_timezone(device.timezone, device_key=device.device_key)
        local_today = now.astimezone(tz).date()
        lookback_start = local_today - timedelta(days=self._settings.prediction_lookback_days)
        state = lock_device_state(db, device.device_key)
        if state.last_reset_ts is not None:
            window_start = state.last_reset_ts.astimezone(tz).date()
        else:
            window_start = lookback_start

        runtime = sum_runtime_since(db, device_key=device.device_key, from_date=window_start)
        if not runtime:
            # No runtime in the window, so any earlier estimate is dropped.
            if delete_filter_prediction(db, device.device_key):
                self._logger.info("stale filter prediction removed device_key=%s", device.device_key)
            return None

        region_avg = None
        if device.region_prefix:
            region_avg = mean_region_runtime_since(db, region_prefix=device.region_prefix, from_date=lookback_start)
        health = predict_filter_health(
            runtime_since_reset_seconds=runtime,
            region_avg_runtime_seconds=region_avg,
            expected_multiplier=self._settings.filter_expected_multiplier,
            fallback_life_seconds=self._settings.prediction_fallback_life_seconds,
        )
        upsert_filter_prediction(
            db,
            device_key=device.device_key,
            region_prefix=device.region_prefix,
            window_start_date=window_start,
            last_reset_ts=state.last_reset_ts,
            runtime_since_reset_seconds=runtime,
            region_avg_runtime_seconds=round(region_avg, 2) if region_avg is not None else None,
            expected_life_seconds=round(health.expected_life_seconds, 2),
            predicted_health_percent=health.predicted_health_percent,
            is_anomalous=health.is_anomalous,
            computed_at=now,
        )
        if health.is_anomalous:
            self._logger.warning(
                "filter runtime anomalous device_key=%s runtime_since_reset=%s expected_life=%s",
                device.device_key,
                runtime,
                health.expected_life_seconds,
            )
        return health
