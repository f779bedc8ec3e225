from __future__ import annotations

from datetime import date, timedelta, timezone
from unittest import TestCase

from sqlalchemy import select

from filterhours.db.models import DailySummary
from filterhours.services.daily_summary import (
    DailySummaryService,
    local_day_bounds,
    resolve_timezone,
    trailing_dates,
)
from tests.support import add_closed_session, add_device, add_event, build_test_store, utc

DAY = date(2026, 1, 9)


class DayBoundaryTests(TestCase):
    def test_local_day_bounds_follow_device_timezone(self) -> None:
        start, end = local_day_bounds(DAY, resolve_timezone("America/New_York"))

        self.assertEqual(start, utc(2026, 1, 9, 5))
        self.assertEqual(end, utc(2026, 1, 10, 5))

    def test_invalid_timezone_falls_back_to_utc(self) -> None:
        with self.assertLogs("filterhours.daily_summary", level="WARNING"):
            tz = resolve_timezone("Mars/Olympus_Mons", device_key="dev-1")
        self.assertIs(tz, timezone.utc)

    def test_trailing_dates_end_on_today(self) -> None:
        self.assertEqual(trailing_dates(DAY, 3), [date(2026, 1, 7), date(2026, 1, 8), DAY])


class DailySummaryServiceTests(TestCase):
    def setUp(self) -> None:
        self.settings, self.session_factory = build_test_store()
        self.service = DailySummaryService(settings=self.settings, session_factory=self.session_factory)
        self.now = utc(2026, 1, 11, 12)

    def _run(self, dates, now=None):
        result = self.service.run_once(now=now or self.now, dates=dates)
        self.assertTrue(result.success, result.error_text)
        return result

    def _summary(self, device_key: str, summary_date: date) -> DailySummary | None:
        with self.session_factory() as db:
            return db.scalars(
                select(DailySummary).where(
                    DailySummary.device_key == device_key,
                    DailySummary.date == summary_date,
                )
            ).first()

    def test_sessions_attributed_to_local_start_date(self) -> None:
        with self.session_factory() as db:
            add_device(db, "dev-ny", timezone_name="America/New_York")
            # 22:30 local on Jan 9, running past local midnight.
            add_closed_session(
                db,
                "dev-ny",
                started_at=utc(2026, 1, 10, 3, 30),
                ended_at=utc(2026, 1, 10, 5, 30),
                mode="cool",
            )
            add_closed_session(
                db,
                "dev-ny",
                started_at=utc(2026, 1, 9, 15),
                ended_at=utc(2026, 1, 9, 15, 20),
                mode="auxheat",
            )
            db.commit()

        result = self._run([DAY, DAY + timedelta(days=1)])

        summary = self._summary("dev-ny", DAY)
        self.assertEqual(summary.runtime_seconds_total, 7200 + 1200)
        self.assertEqual(summary.runtime_seconds_cool, 7200)
        self.assertEqual(summary.runtime_seconds_auxheat, 1200)
        self.assertEqual(summary.runtime_sessions_count, 2)
        self.assertIsNone(self._summary("dev-ny", DAY + timedelta(days=1)))
        self.assertEqual(result.details["created"], 1)
        self.assertEqual(result.details["skipped"], 1)

    def test_thermostat_setting_durations(self) -> None:
        with self.session_factory() as db:
            add_device(db, "dev-1")
            add_event(db, "dev-1", utc(2026, 1, 8, 20), thermostat_mode="heat")
            add_event(db, "dev-1", utc(2026, 1, 9, 6), thermostat_mode="heat_cool")
            add_event(db, "dev-1", utc(2026, 1, 9, 9), thermostat_mode="auto")
            add_event(db, "dev-1", utc(2026, 1, 9, 12), thermostat_mode="cool")
            add_event(db, "dev-1", utc(2026, 1, 9, 18), thermostat_mode="eco")
            db.commit()

        self._run([DAY])

        summary = self._summary("dev-1", DAY)
        self.assertEqual(summary.runtime_seconds_mode_heat, 6 * 3600)
        self.assertEqual(summary.runtime_seconds_mode_auto, 6 * 3600)
        self.assertEqual(summary.runtime_seconds_mode_cool, 6 * 3600)
        # The latest setting has no following change yet.
        self.assertEqual(summary.runtime_seconds_mode_eco, 0)
        self.assertEqual(summary.runtime_sessions_count, 0)

    def test_setting_interval_is_clipped_to_the_day(self) -> None:
        with self.session_factory() as db:
            add_device(db, "dev-1")
            add_event(db, "dev-1", utc(2026, 1, 9, 22), thermostat_mode="off")
            add_event(db, "dev-1", utc(2026, 1, 10, 2), thermostat_mode="heat")
            db.commit()

        self._run([DAY, DAY + timedelta(days=1)])

        self.assertEqual(self._summary("dev-1", DAY).runtime_seconds_mode_off, 2 * 3600)
        self.assertEqual(self._summary("dev-1", DAY + timedelta(days=1)).runtime_seconds_mode_off, 2 * 3600)

    def test_readings_exclude_implausible_values(self) -> None:
        with self.session_factory() as db:
            add_device(db, "dev-1")
            for hour, temperature, humidity in (
                (1, 70.0, 40.0),
                (2, 71.0, 45.0),
                (3, 150.0, 0.0),
                (4, 20.0, None),
            ):
                add_event(db, "dev-1", utc(2026, 1, 9, hour), temperature_f=temperature, humidity=humidity)
            db.commit()

        self._run([DAY])

        summary = self._summary("dev-1", DAY)
        self.assertEqual(summary.avg_temperature, 70.5)
        self.assertEqual(summary.avg_humidity, 42.5)

    def test_rerun_with_unchanged_inputs_is_identical(self) -> None:
        with self.session_factory() as db:
            add_device(db, "dev-1")
            add_closed_session(db, "dev-1", started_at=utc(2026, 1, 9, 10), ended_at=utc(2026, 1, 9, 10, 15))
            add_event(db, "dev-1", utc(2026, 1, 9, 10), temperature_f=68.333)
            db.commit()

        self._run([DAY])
        first = self._summary("dev-1", DAY)
        result = self._run([DAY], now=self.now + timedelta(hours=1))
        second = self._summary("dev-1", DAY)

        self.assertEqual(result.details["unchanged"], 1)
        columns = [column.key for column in DailySummary.__table__.columns]
        self.assertEqual(
            {key: getattr(first, key) for key in columns},
            {key: getattr(second, key) for key in columns},
        )
        self.assertEqual(second.updated_at, self.now)

    def test_default_window_covers_lookback_through_local_today(self) -> None:
        with self.session_factory() as db:
            add_device(db, "dev-1")
            add_closed_session(db, "dev-1", started_at=utc(2026, 1, 4, 8), ended_at=utc(2026, 1, 4, 8, 10))
            add_closed_session(db, "dev-1", started_at=utc(2026, 1, 5, 8), ended_at=utc(2026, 1, 5, 8, 10))
            add_closed_session(db, "dev-1", started_at=utc(2026, 1, 11, 8), ended_at=utc(2026, 1, 11, 8, 10))
            db.commit()

        self._run(None)

        self.assertIsNone(self._summary("dev-1", date(2026, 1, 4)))
        self.assertIsNotNone(self._summary("dev-1", date(2026, 1, 5)))
        self.assertIsNotNone(self._summary("dev-1", date(2026, 1, 11)))

    def test_corrected_row_survives_rerun_until_runtime_changes(self) -> None:
        with self.session_factory() as db:
            add_device(db, "dev-1")
            add_closed_session(db, "dev-1", started_at=utc(2026, 1, 9, 10), ended_at=utc(2026, 1, 9, 10, 10))
            db.commit()
        self._run([DAY])

        with self.session_factory() as db:
            summary = db.scalars(select(DailySummary)).one()
            summary.runtime_seconds_total = 1500
            summary.runtime_seconds_cool = 1500
            summary.is_corrected = True
            summary.corrected_at = self.now
            summary.precorrection_runtime_seconds_total = 600
            db.commit()

        self._run([DAY], now=self.now + timedelta(hours=1))
        kept = self._summary("dev-1", DAY)
        self.assertTrue(kept.is_corrected)
        self.assertEqual(kept.runtime_seconds_total, 1500)

        with self.session_factory() as db:
            add_closed_session(db, "dev-1", started_at=utc(2026, 1, 9, 14), ended_at=utc(2026, 1, 9, 14, 5))
            db.commit()
        self._run([DAY], now=self.now + timedelta(hours=2))

        cleared = self._summary("dev-1", DAY)
        self.assertFalse(cleared.is_corrected)
        self.assertIsNone(cleared.corrected_at)
        self.assertEqual(cleared.runtime_seconds_total, 900)
        self.assertEqual(cleared.runtime_seconds_cool, 900)
        self.assertEqual(cleared.updated_at, self.now + timedelta(hours=2))
