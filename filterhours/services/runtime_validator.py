from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session, sessionmaker

from filterhours.core.config import Settings
from filterhours.db.models import DailySummary
from filterhours.repositories.ground_truth import GroundTruthDailyTotals, get_ground_truth_daily_totals
from filterhours.repositories.summaries import get_daily_summary
from filterhours.services.worker_runs import WorkerOutcome, WorkerRunResult, run_worker

WORKER_NAME = "runtime_validator"


@dataclass(frozen=True)
class ValidationOutcome:
    device_key: str
    discrepancy_seconds: int
    corrected: bool


class RuntimeValidatorService:
    """Reconciles computed daily runtime against the vendor's interval report.

    Days whose computed total is off by more than the tolerance take the
    vendor's per-stage totals and are flagged as corrected.
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
        self._logger = logging.getLogger("filterhours.runtime_validator")

    def run_once(self, now: datetime | None = None) -> WorkerRunResult:
        return run_worker(
            session_factory=self._session_factory,
            worker_name=WORKER_NAME,
            fn=lambda db: self.validate(db, now=now),
        )

    def validate(self, db: Session, *, now: datetime | None = None) -> WorkerOutcome:
        now = now or self._clock()
        from_date = now.astimezone(timezone.utc).date() - timedelta(days=self._settings.validator_lookback_days)

        validated = 0
        corrected = 0
        missing = 0
        devices: set[str] = set()
        for totals in get_ground_truth_daily_totals(db, from_date=from_date):
            summary = get_daily_summary(db, device_key=totals.device_key, summary_date=totals.report_date)
            if summary is None:
                missing += 1
                self._logger.info(
                    "ground truth without summary skipped device_key=%s date=%s intervals=%s",
                    totals.device_key,
                    totals.report_date.isoformat(),
                    totals.interval_count,
                )
                continue
            outcome = self.apply_validation(summary, totals, now=now)
            devices.add(totals.device_key)
            validated += 1
            if outcome.corrected:
                corrected += 1
        db.flush()

        self._logger.info(
            "runtime validation complete from_date=%s validated=%s corrected=%s missing_summaries=%s",
            from_date.isoformat(),
            validated,
            corrected,
            missing,
        )
        return WorkerOutcome(
            devices_processed=len(devices),
            details={
                "from_date": from_date.isoformat(),
                "validated": validated,
                "corrected": corrected,
                "missing_summaries": missing,
            },
        )

    def apply_validation(
        self,
        summary: DailySummary,
        totals: GroundTruthDailyTotals,
        *,
        now: datetime,
    ) -> ValidationOutcome:
        validated_total = totals.total_seconds
        computed_total = int(summary.runtime_seconds_total or 0)
        if summary.is_corrected and summary.precorrection_runtime_seconds_total is not None:
            computed_total = summary.precorrection_runtime_seconds_total
        discrepancy = abs(validated_total - computed_total)

        summary.validated_runtime_seconds_total = validated_total
        summary.validated_runtime_seconds_heat = totals.heat_seconds
        summary.validated_runtime_seconds_cool = totals.cool_seconds
        summary.validated_runtime_seconds_auxheat = totals.auxheat_seconds
        summary.validated_runtime_seconds_fan = totals.fan_seconds
        summary.validation_source = totals.data_source
        summary.validation_interval_count = totals.interval_count
        summary.validation_coverage_percent = round(
            totals.interval_count * 100.0 / self._settings.expected_intervals_per_day,
            2,
        )
        summary.validation_discrepancy_seconds = discrepancy
        summary.validation_performed_at = now

        if discrepancy > self._settings.validation_tolerance_seconds:
            if not summary.is_corrected:
                summary.precorrection_runtime_seconds_total = computed_total
            summary.runtime_seconds_heat = totals.heat_seconds
            summary.runtime_seconds_cool = totals.cool_seconds
            summary.runtime_seconds_auxheat = totals.auxheat_seconds
            summary.runtime_seconds_fan = totals.fan_seconds
            summary.runtime_seconds_total = validated_total
            summary.is_corrected = True
            summary.corrected_at = now
            summary.updated_at = now
            self._logger.info(
                "summary corrected device_key=%s date=%s computed_total=%s validated_total=%s discrepancy=%s",
                summary.device_key,
                summary.date.isoformat(),
                computed_total,
                validated_total,
                discrepancy,
            )
            return ValidationOutcome(device_key=summary.device_key, discrepancy_seconds=discrepancy, corrected=True)

        # Within tolerance; a stale correction hands the row back to the aggregator.
        summary.is_corrected = False
        summary.corrected_at = None
        summary.precorrection_runtime_seconds_total = None
        summary.updated_at = now
        return ValidationOutcome(device_key=summary.device_key, discrepancy_seconds=discrepancy, corrected=False)
