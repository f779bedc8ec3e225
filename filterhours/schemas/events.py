from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator


def _normalize_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


class EquipmentEventIn(BaseModel):
    device_key: str = Field(min_length=1, max_length=64)
    source_event_id: str | None = Field(default=None, max_length=128)
    equipment_status: str | None = Field(default=None, max_length=128)
    previous_status: str | None = Field(default=None, max_length=128)
    is_active: bool | None = None
    runtime_seconds: int | None = Field(default=None, ge=0, le=86400)
    thermostat_mode: str | None = Field(default=None, max_length=32)
    temperature_f: float | None = Field(default=None, ge=-100.0, le=200.0)
    humidity: float | None = Field(default=None, ge=0.0, le=100.0)
    recorded_at: datetime

    # Device attributes applied when the device is first seen.
    vendor_device_id: str | None = Field(default=None, max_length=128)
    timezone: str | None = Field(default=None, max_length=64)
    region_prefix: str | None = Field(default=None, max_length=16)

    @field_validator(
        "device_key",
        "source_event_id",
        "equipment_status",
        "previous_status",
        "thermostat_mode",
        "vendor_device_id",
        "timezone",
        "region_prefix",
        mode="before",
    )
    @classmethod
    def _normalize_text_fields(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("recorded_at")
    @classmethod
    def _recorded_at_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class DeviceConfigUpdate(BaseModel):
    use_forced_air_for_heat: bool | None = None
    filter_target_hours: float | None = Field(default=None, gt=0.0, le=100000.0)
    timezone: str | None = Field(default=None, max_length=64)
    region_prefix: str | None = Field(default=None, max_length=16)

    @field_validator("timezone", "region_prefix", mode="before")
    @classmethod
    def _normalize_text_fields(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value)
