from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Annotated

from pydantic import BaseModel, Field, field_validator

StageSeconds = Annotated[int, Field(ge=0, le=300)]


class GroundTruthIntervalIn(BaseModel):
    device_key: str = Field(min_length=1, max_length=64)
    report_date: date
    interval_start: datetime
    aux_heat1_seconds: StageSeconds = 0
    aux_heat2_seconds: StageSeconds = 0
    aux_heat3_seconds: StageSeconds = 0
    comp_cool1_seconds: StageSeconds = 0
    comp_cool2_seconds: StageSeconds = 0
    comp_heat1_seconds: StageSeconds = 0
    comp_heat2_seconds: StageSeconds = 0
    fan_seconds: StageSeconds = 0
    data_source: str = Field(default="vendor_runtime_report", min_length=1, max_length=64)

    @field_validator("interval_start")
    @classmethod
    def _interval_start_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
