from __future__ import annotations

from unittest import TestCase

from filterhours.services.status_classifier import (
    HvacMode,
    StatusClassification,
    ThermostatSetting,
    classify_status,
    classify_thermostat_setting,
    counts_toward_filter,
    is_active_status,
    resolve_active,
)


class ClassifyStatusTests(TestCase):
    def test_vendor_statuses(self) -> None:
        cases = {
            "auxHeat1": StatusClassification(HvacMode.AUXHEAT, False),
            "auxHeat1,fan": StatusClassification(HvacMode.AUXHEAT, True),
            "heatPump": StatusClassification(HvacMode.HEAT, False),
            "heating_fan": StatusClassification(HvacMode.HEAT, True),
            "Cooling": StatusClassification(HvacMode.COOL, False),
            "fan": StatusClassification(HvacMode.FAN, True),
            "idle": StatusClassification(HvacMode.UNKNOWN, False),
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(classify_status(raw), expected)

    def test_empty_status_is_unknown(self) -> None:
        self.assertEqual(classify_status(None).mode, HvacMode.UNKNOWN)
        self.assertEqual(classify_status("   ").mode, HvacMode.UNKNOWN)


class ActivityTests(TestCase):
    def test_active_tokens(self) -> None:
        self.assertTrue(is_active_status("Cooling"))
        self.assertTrue(is_active_status("compCool1, fan"))
        self.assertTrue(is_active_status("fan_only"))
        self.assertFalse(is_active_status("idle"))
        self.assertFalse(is_active_status("compCool1"))
        self.assertFalse(is_active_status(None))

    def test_explicit_flag_wins(self) -> None:
        self.assertFalse(resolve_active(False, "cooling"))
        self.assertTrue(resolve_active(True, "idle"))
        self.assertTrue(resolve_active(None, "heating"))
        self.assertIsNone(resolve_active(None, None))


class FilterPolicyTests(TestCase):
    def test_cool_and_fan_always_count(self) -> None:
        for mode in (HvacMode.COOL, HvacMode.FAN):
            with self.subTest(mode=mode):
                self.assertTrue(
                    counts_toward_filter(StatusClassification(mode, False), use_forced_air_for_heat=False)
                )

    def test_heat_depends_on_air_movement(self) -> None:
        radiant = StatusClassification(HvacMode.HEAT, False)
        self.assertFalse(counts_toward_filter(radiant, use_forced_air_for_heat=False))
        self.assertTrue(counts_toward_filter(radiant, use_forced_air_for_heat=True))
        self.assertTrue(
            counts_toward_filter(StatusClassification(HvacMode.AUXHEAT, True), use_forced_air_for_heat=False)
        )

    def test_unknown_never_counts(self) -> None:
        self.assertFalse(
            counts_toward_filter(StatusClassification(HvacMode.UNKNOWN, False), use_forced_air_for_heat=True)
        )


class ThermostatSettingTests(TestCase):
    def test_aliases(self) -> None:
        self.assertEqual(classify_thermostat_setting("heatCool"), ThermostatSetting.AUTO)
        self.assertEqual(classify_thermostat_setting("heat_cool"), ThermostatSetting.AUTO)
        self.assertEqual(classify_thermostat_setting("Vacation"), ThermostatSetting.AWAY)
        self.assertEqual(classify_thermostat_setting("energy saver"), ThermostatSetting.ECO)
        self.assertEqual(classify_thermostat_setting("emergency_heat"), ThermostatSetting.HEAT)
        self.assertEqual(classify_thermostat_setting("smart"), ThermostatSetting.OTHER)
        self.assertIsNone(classify_thermostat_setting(""))
