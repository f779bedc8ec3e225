from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from filterhours.db.models import DailySummary, Device, HourlySummary


@dataclass(frozen=True)
class RegionSummaryRow:
    region_prefix: str | None
    device_key: str
    date: date
    runtime_seconds_total: int
    avg_temperature: float | None
    avg_humidity: float | None


def get_daily_summary(db: Session, *, device_key: str, summary_date: date) -> DailySummary | None:
    return db.scalars(
        select(DailySummary).where(
            DailySummary.device_key == device_key,
            DailySummary.date == summary_date,
        )
    ).first()


def list_summaries_with_region(db: Session, *, from_date: date) -> list[RegionSummaryRow]:
    rows = db.execute(
        select(
            Device.region_prefix,
            DailySummary.device_key,
            DailySummary.date,
            DailySummary.runtime_seconds_total,
            DailySummary.avg_temperature,
            DailySummary.avg_humidity,
        )
        .join(Device, Device.device_key == DailySummary.device_key)
        .where(DailySummary.date >= from_date)
        .order_by(DailySummary.date.asc(), DailySummary.device_key.asc())
    ).all()
    return [
        RegionSummaryRow(
            region_prefix=row.region_prefix,
            device_key=row.device_key,
            date=row.date,
            runtime_seconds_total=int(row.runtime_seconds_total or 0),
            avg_temperature=row.avg_temperature,
            avg_humidity=row.avg_humidity,
        )
        for row in rows
    ]


def list_hourly_summaries(
    db: Session,
    *,
    device_key: str,
    from_hour: datetime,
    to_hour: datetime,
) -> list[HourlySummary]:
    return list(
        db.scalars(
            select(HourlySummary)
            .where(
                HourlySummary.device_key == device_key,
                HourlySummary.summary_hour >= from_hour,
                HourlySummary.summary_hour < to_hour,
            )
            .order_by(HourlySummary.summary_hour.asc())
        )
    )


def sum_runtime_since(db: Session, *, device_key: str, from_date: date) -> int | None:
    total = db.scalar(
        select(func.sum(DailySummary.runtime_seconds_total)).where(
            DailySummary.device_key == device_key,
            DailySummary.date >= from_date,
        )
    )
    return int(total) if total is not None else None
