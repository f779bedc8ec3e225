from __future__ import annotations

from datetime import date, timedelta
from unittest import TestCase

from filterhours.repositories.ground_truth import upsert_ground_truth_intervals
from filterhours.repositories.summaries import get_daily_summary
from filterhours.schemas.ground_truth import GroundTruthIntervalIn
from filterhours.services.runtime_validator import RuntimeValidatorService
from tests.support import add_device, add_summary, build_test_store, utc

REPORT_DATE = date(2026, 6, 14)
NOW = utc(2026, 6, 15, 3)


def _intervals(device_key: str, report_date: date, *, count: int, **stage_seconds: int) -> list[GroundTruthIntervalIn]:
    day_start = utc(report_date.year, report_date.month, report_date.day)
    return [
        GroundTruthIntervalIn(
            device_key=device_key,
            report_date=report_date,
            interval_start=day_start + timedelta(minutes=5 * index),
            **stage_seconds,
        )
        for index in range(count)
    ]


class RuntimeValidatorServiceTests(TestCase):
    def setUp(self) -> None:
        self.settings, self.session_factory = build_test_store()
        self.service = RuntimeValidatorService(settings=self.settings, session_factory=self.session_factory)
        with self.session_factory() as db:
            add_device(db, "dev-1")
            add_summary(
                db,
                "dev-1",
                REPORT_DATE,
                runtime_seconds_total=1000,
                runtime_seconds_cool=1000,
                updated_at=NOW - timedelta(hours=2),
            )
            db.commit()

    def _load_ground_truth(self, intervals: list[GroundTruthIntervalIn]) -> None:
        with self.session_factory() as db:
            upsert_ground_truth_intervals(db, intervals)
            db.commit()

    def _summary(self):
        with self.session_factory() as db:
            return get_daily_summary(db, device_key="dev-1", summary_date=REPORT_DATE)

    def test_discrepancy_within_tolerance_is_recorded_only(self) -> None:
        self._load_ground_truth(_intervals("dev-1", REPORT_DATE, count=5, comp_cool1_seconds=250, fan_seconds=100))

        result = self.service.run_once(now=NOW)

        self.assertTrue(result.success, result.error_text)
        summary = self._summary()
        self.assertFalse(summary.is_corrected)
        self.assertEqual(summary.runtime_seconds_total, 1000)
        self.assertEqual(summary.validated_runtime_seconds_total, 1250)
        self.assertEqual(summary.validated_runtime_seconds_cool, 1250)
        self.assertEqual(summary.validated_runtime_seconds_fan, 500)
        self.assertEqual(summary.validation_discrepancy_seconds, 250)
        self.assertEqual(summary.validation_interval_count, 5)
        self.assertEqual(summary.validation_coverage_percent, 1.74)
        self.assertEqual(summary.validation_source, "vendor_runtime_report")
        self.assertEqual(summary.validation_performed_at, NOW)

    def test_discrepancy_over_tolerance_corrects_summary(self) -> None:
        intervals = _intervals("dev-1", REPORT_DATE, count=4, comp_cool1_seconds=300, fan_seconds=300)
        intervals += _intervals("dev-1", REPORT_DATE, count=1, comp_heat2_seconds=200)
        intervals[-1] = intervals[-1].model_copy(update={"interval_start": utc(2026, 6, 14, 12)})
        self._load_ground_truth(intervals)

        self.service.run_once(now=NOW)

        summary = self._summary()
        self.assertTrue(summary.is_corrected)
        self.assertEqual(summary.corrected_at, NOW)
        self.assertEqual(summary.runtime_seconds_total, 1400)
        self.assertEqual(summary.runtime_seconds_cool, 1200)
        self.assertEqual(summary.runtime_seconds_heat, 200)
        self.assertEqual(summary.runtime_seconds_fan, 1200)
        self.assertEqual(summary.validation_discrepancy_seconds, 400)
        self.assertEqual(summary.precorrection_runtime_seconds_total, 1000)

    def test_rerun_keeps_correction_stable(self) -> None:
        self._load_ground_truth(_intervals("dev-1", REPORT_DATE, count=7, comp_cool2_seconds=200))

        self.service.run_once(now=NOW)
        self.service.run_once(now=NOW + timedelta(minutes=5))

        summary = self._summary()
        self.assertTrue(summary.is_corrected)
        self.assertEqual(summary.runtime_seconds_total, 1400)
        self.assertEqual(summary.validation_discrepancy_seconds, 400)
        self.assertEqual(summary.precorrection_runtime_seconds_total, 1000)

    def test_ground_truth_without_summary_is_skipped(self) -> None:
        with self.session_factory() as db:
            add_device(db, "dev-2")
            db.commit()
        self._load_ground_truth(_intervals("dev-2", REPORT_DATE, count=2, fan_seconds=300))

        result = self.service.run_once(now=NOW)

        self.assertTrue(result.success)
        self.assertEqual(result.details["missing_summaries"], 1)
        self.assertEqual(result.details["validated"], 0)

    def test_report_dates_outside_lookback_are_ignored(self) -> None:
        old_date = REPORT_DATE - timedelta(days=3)
        with self.session_factory() as db:
            add_summary(db, "dev-1", old_date, runtime_seconds_total=0, updated_at=NOW)
            db.commit()
        self._load_ground_truth(_intervals("dev-1", old_date, count=10, comp_cool1_seconds=300))

        self.service.run_once(now=NOW)

        with self.session_factory() as db:
            old_summary = get_daily_summary(db, device_key="dev-1", summary_date=old_date)
        self.assertIsNone(old_summary.validation_performed_at)
        self.assertFalse(old_summary.is_corrected)
