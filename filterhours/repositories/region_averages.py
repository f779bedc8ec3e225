from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from filterhours.db.models import RegionAverage


def get_region_average(db: Session, *, region_prefix: str, summary_date: date) -> RegionAverage | None:
    return db.scalars(
        select(RegionAverage).where(
            RegionAverage.region_prefix == region_prefix,
            RegionAverage.date == summary_date,
        )
    ).first()


def upsert_region_average(
    db: Session,
    *,
    region_prefix: str,
    summary_date: date,
    avg_runtime_seconds: float | None,
    avg_temperature: float | None,
    avg_humidity: float | None,
    sample_size: int,
    updated_at: datetime,
) -> RegionAverage:
    row = get_region_average(db, region_prefix=region_prefix, summary_date=summary_date)
    if row is None:
        row = RegionAverage(region_prefix=region_prefix, date=summary_date)
        db.add(row)
    row.avg_runtime_seconds = avg_runtime_seconds
    row.avg_temperature = avg_temperature
    row.avg_humidity = avg_humidity
    row.sample_size = sample_size
    row.updated_at = updated_at
    db.flush()
    return row


def list_region_averages(
    db: Session,
    *,
    region_prefix: str | None = None,
    from_date: date | None = None,
) -> list[RegionAverage]:
    query = select(RegionAverage)
    if region_prefix is not None:
        query = query.where(RegionAverage.region_prefix == region_prefix)
    if from_date is not None:
        query = query.where(RegionAverage.date >= from_date)
    return list(db.scalars(query.order_by(RegionAverage.region_prefix.asc(), RegionAverage.date.asc())))


def delete_region_average(db: Session, row: RegionAverage) -> None:
    db.delete(row)
    db.flush()


def mean_region_runtime_since(db: Session, *, region_prefix: str, from_date: date) -> float | None:
    value = db.scalar(
        select(func.avg(RegionAverage.avg_runtime_seconds)).where(
            RegionAverage.region_prefix == region_prefix,
            RegionAverage.date >= from_date,
        )
    )
    return float(value) if value is not None else None
