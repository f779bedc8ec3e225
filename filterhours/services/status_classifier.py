from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class HvacMode(str, Enum):
    HEAT = "heat"
    COOL = "cool"
    FAN = "fan"
    AUXHEAT = "auxheat"
    UNKNOWN = "unknown"


class ThermostatSetting(str, Enum):
    HEAT = "heat"
    COOL = "cool"
    AUTO = "auto"
    OFF = "off"
    AWAY = "away"
    ECO = "eco"
    OTHER = "other"


ACTIVE_STATUS_TOKENS: frozenset[str] = frozenset(
    {
        "heat",
        "heating",
        "cool",
        "cooling",
        "fan",
        "fan_only",
        "fan-on",
        "fanstart",
        "running",
    }
)

_THERMOSTAT_SETTING_ALIASES: dict[str, ThermostatSetting] = {
    "heat": ThermostatSetting.HEAT,
    "heating": ThermostatSetting.HEAT,
    "emergency_heat": ThermostatSetting.HEAT,
    "emergencyheat": ThermostatSetting.HEAT,
    "auxheat": ThermostatSetting.HEAT,
    "auxheatonly": ThermostatSetting.HEAT,
    "cool": ThermostatSetting.COOL,
    "cooling": ThermostatSetting.COOL,
    "auto": ThermostatSetting.AUTO,
    "heat_cool": ThermostatSetting.AUTO,
    "heatcool": ThermostatSetting.AUTO,
    "heat-cool": ThermostatSetting.AUTO,
    "off": ThermostatSetting.OFF,
    "away": ThermostatSetting.AWAY,
    "vacation": ThermostatSetting.AWAY,
    "eco": ThermostatSetting.ECO,
    "energy_saver": ThermostatSetting.ECO,
    "energysaver": ThermostatSetting.ECO,
}

_TOKEN_SPLIT_RE = re.compile(r"[,;|\s]+")


@dataclass(frozen=True)
class StatusClassification:
    mode: HvacMode
    fan_assisted: bool


UNKNOWN_CLASSIFICATION = StatusClassification(mode=HvacMode.UNKNOWN, fan_assisted=False)


def normalize_status(raw: str | None) -> str | None:
    if raw is None:
        return None
    value = raw.strip()
    return value or None


def classify_status(raw: str | None) -> StatusClassification:
    """Map a free-form vendor equipment status onto an HVAC mode.

    Matching is a lower-cased substring scan: ``aux`` wins over ``heat`` so
    ``auxHeat1`` is auxiliary heat, ``heat`` before ``cool`` and ``fan``.
    A status that mentions a fan anywhere (``heating_fan``, ``auxHeat1,fan``)
    is fan-assisted, i.e. air is pushed through the filter.
    """
    status = normalize_status(raw)
    if status is None:
        return UNKNOWN_CLASSIFICATION

    lowered = status.lower()
    fan_assisted = "fan" in lowered
    if "aux" in lowered:
        mode = HvacMode.AUXHEAT
    elif "heat" in lowered:
        mode = HvacMode.HEAT
    elif "cool" in lowered:
        mode = HvacMode.COOL
    elif fan_assisted:
        mode = HvacMode.FAN
    else:
        mode = HvacMode.UNKNOWN
    return StatusClassification(mode=mode, fan_assisted=fan_assisted)


def is_active_status(raw: str | None) -> bool:
    status = normalize_status(raw)
    if status is None:
        return False
    lowered = status.lower()
    if lowered in ACTIVE_STATUS_TOKENS:
        return True
    return any(token in ACTIVE_STATUS_TOKENS for token in _TOKEN_SPLIT_RE.split(lowered) if token)


def resolve_active(is_active: bool | None, status: str | None) -> bool | None:
    """Decide whether equipment is running for a transition-tracked event.

    An explicit ``is_active`` flag always wins over status-token matching.
    Returns None when the event carries neither signal.
    """
    if is_active is not None:
        return bool(is_active)
    if normalize_status(status) is None:
        return None
    return is_active_status(status)


def counts_toward_filter(
    classification: StatusClassification,
    *,
    use_forced_air_for_heat: bool,
) -> bool:
    if classification.mode in (HvacMode.COOL, HvacMode.FAN):
        return True
    if classification.fan_assisted:
        return True
    if classification.mode in (HvacMode.HEAT, HvacMode.AUXHEAT):
        # Radiant and hydronic heat moves no air through the filter.
        return use_forced_air_for_heat
    return False


def classify_thermostat_setting(raw: str | None) -> ThermostatSetting | None:
    value = normalize_status(raw)
    if value is None:
        return None
    key = value.lower().replace(" ", "_")
    return _THERMOSTAT_SETTING_ALIASES.get(key, ThermostatSetting.OTHER)
