from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase

from pydantic import ValidationError
from sqlalchemy import select

from filterhours.db.models import Device, DeviceState, EquipmentEvent, GroundTruthInterval
from filterhours.repositories.events import record_equipment_events
from filterhours.repositories.ground_truth import upsert_ground_truth_intervals
from filterhours.schemas.events import EquipmentEventIn
from filterhours.schemas.ground_truth import GroundTruthIntervalIn
from tests.support import build_test_store, utc


class EventSchemaTests(TestCase):
    def test_naive_timestamp_is_utc(self) -> None:
        event = EquipmentEventIn(device_key="dev-1", recorded_at=datetime(2026, 2, 1, 9, 30))

        self.assertEqual(event.recorded_at, utc(2026, 2, 1, 9, 30))

    def test_offset_timestamp_is_converted(self) -> None:
        event = EquipmentEventIn(
            device_key="dev-1",
            recorded_at=datetime(2026, 2, 1, 9, 30, tzinfo=timezone(timedelta(hours=-5))),
        )

        self.assertEqual(event.recorded_at, utc(2026, 2, 1, 14, 30))

    def test_rejects_invalid_payloads(self) -> None:
        for fields in (
            {"device_key": "  "},
            {"device_key": "dev-1", "runtime_seconds": -1},
            {"device_key": "dev-1", "humidity": 140.0},
            {"device_key": "dev-1", "temperature_f": "warm"},
        ):
            with self.subTest(fields=fields):
                with self.assertRaises(ValidationError):
                    EquipmentEventIn(recorded_at=utc(2026, 2, 1), **fields)

    def test_ground_truth_stage_bounds(self) -> None:
        with self.assertRaises(ValidationError):
            GroundTruthIntervalIn(
                device_key="dev-1",
                report_date="2026-02-01",
                interval_start=utc(2026, 2, 1),
                fan_seconds=301,
            )


class RecordEventsTests(TestCase):
    def setUp(self) -> None:
        self.settings, self.session_factory = build_test_store()

    def test_first_event_creates_device_and_state(self) -> None:
        payload = EquipmentEventIn(
            device_key="dev-1",
            recorded_at=utc(2026, 2, 1, 9),
            equipment_status="heating_fan",
            thermostat_mode="heatCool",
            timezone="America/Chicago",
            region_prefix="606",
        )

        with self.session_factory() as db:
            created = record_equipment_events(db, [payload], default_filter_target_hours=120.0)
            db.commit()

        self.assertEqual(len(created), 1)
        with self.session_factory() as db:
            device = db.get(Device, "dev-1")
            self.assertEqual(device.timezone, "America/Chicago")
            self.assertEqual(device.region_prefix, "606")
            self.assertEqual(device.filter_target_hours, 120.0)
            self.assertIsNotNone(db.get(DeviceState, "dev-1"))
            event = db.scalars(select(EquipmentEvent)).one()
        self.assertEqual(event.hvac_mode, "heat")
        self.assertTrue(event.fan_assisted)
        self.assertEqual(event.thermostat_setting, "auto")

    def test_posted_runtime_is_classified_from_previous_status(self) -> None:
        payload = EquipmentEventIn(
            device_key="dev-1",
            recorded_at=utc(2026, 2, 1, 9),
            equipment_status="idle",
            previous_status="compCool2",
            runtime_seconds=420,
        )

        with self.session_factory() as db:
            event = record_equipment_events(db, [payload], default_filter_target_hours=100.0)[0]

        self.assertEqual(event.hvac_mode, "cool")

    def test_duplicate_source_event_is_ignored(self) -> None:
        payload = EquipmentEventIn(
            device_key="dev-1",
            source_event_id="evt-42",
            recorded_at=utc(2026, 2, 1, 9),
            is_active=True,
        )

        with self.session_factory() as db:
            created = record_equipment_events(db, [payload, payload], default_filter_target_hours=100.0)
            db.commit()

        self.assertEqual(len(created), 1)

    def test_ground_truth_upsert_by_interval(self) -> None:
        interval = GroundTruthIntervalIn(
            device_key="dev-1",
            report_date="2026-02-01",
            interval_start=utc(2026, 2, 1, 0, 5),
            comp_cool1_seconds=120,
        )

        with self.session_factory() as db:
            upsert_ground_truth_intervals(db, [interval])
            upsert_ground_truth_intervals(db, [interval.model_copy(update={"comp_cool1_seconds": 180})])
            db.commit()
            rows = list(db.scalars(select(GroundTruthInterval)))

        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].comp_cool1_seconds, 180)
