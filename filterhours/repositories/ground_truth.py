from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from filterhours.db.models import GroundTruthInterval
from filterhours.schemas.ground_truth import GroundTruthIntervalIn


@dataclass(frozen=True)
class GroundTruthDailyTotals:
    device_key: str
    report_date: date
    heat_seconds: int
    cool_seconds: int
    auxheat_seconds: int
    fan_seconds: int
    interval_count: int
    data_source: str | None = None

    @property
    def total_seconds(self) -> int:
        # Fan time overlaps the heating/cooling stages and is not added.
        return self.heat_seconds + self.cool_seconds + self.auxheat_seconds


def upsert_ground_truth_intervals(db: Session, payloads: list[GroundTruthIntervalIn]) -> int:
    written = 0
    for payload in payloads:
        row = db.scalars(
            select(GroundTruthInterval).where(
                GroundTruthInterval.device_key == payload.device_key,
                GroundTruthInterval.interval_start == payload.interval_start,
            )
        ).first()
        if row is None:
            row = GroundTruthInterval(device_key=payload.device_key, interval_start=payload.interval_start)
            db.add(row)
        row.report_date = payload.report_date
        row.aux_heat1_seconds = payload.aux_heat1_seconds
        row.aux_heat2_seconds = payload.aux_heat2_seconds
        row.aux_heat3_seconds = payload.aux_heat3_seconds
        row.comp_cool1_seconds = payload.comp_cool1_seconds
        row.comp_cool2_seconds = payload.comp_cool2_seconds
        row.comp_heat1_seconds = payload.comp_heat1_seconds
        row.comp_heat2_seconds = payload.comp_heat2_seconds
        row.fan_seconds = payload.fan_seconds
        row.data_source = payload.data_source
        written += 1
    db.flush()
    return written


def get_ground_truth_daily_totals(db: Session, *, from_date: date) -> list[GroundTruthDailyTotals]:
    rows = db.execute(
        select(
            GroundTruthInterval.device_key,
            GroundTruthInterval.report_date,
            func.sum(GroundTruthInterval.comp_heat1_seconds + GroundTruthInterval.comp_heat2_seconds).label(
                "heat_seconds"
            ),
            func.sum(GroundTruthInterval.comp_cool1_seconds + GroundTruthInterval.comp_cool2_seconds).label(
                "cool_seconds"
            ),
            func.sum(
                GroundTruthInterval.aux_heat1_seconds
                + GroundTruthInterval.aux_heat2_seconds
                + GroundTruthInterval.aux_heat3_seconds
            ).label("auxheat_seconds"),
            func.sum(GroundTruthInterval.fan_seconds).label("fan_seconds"),
            func.count(GroundTruthInterval.id).label("interval_count"),
            func.max(GroundTruthInterval.data_source).label("data_source"),
        )
        .where(GroundTruthInterval.report_date >= from_date)
        .group_by(GroundTruthInterval.device_key, GroundTruthInterval.report_date)
        .order_by(GroundTruthInterval.device_key.asc(), GroundTruthInterval.report_date.asc())
    ).all()
    return [
        GroundTruthDailyTotals(
            device_key=row.device_key,
            report_date=row.report_date,
            heat_seconds=int(row.heat_seconds or 0),
            cool_seconds=int(row.cool_seconds or 0),
            auxheat_seconds=int(row.auxheat_seconds or 0),
            fan_seconds=int(row.fan_seconds or 0),
            interval_count=int(row.interval_count or 0),
            data_source=row.data_source,
        )
        for row in rows
    ]
