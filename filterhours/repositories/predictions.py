from __future__ import annotations

from sqlalchemy.orm import Session

from filterhours.db.models import FilterPrediction


def upsert_filter_prediction(db: Session, *, device_key: str, **values) -> FilterPrediction:
    row = db.get(FilterPrediction, device_key)
    if row is None:
        row = FilterPrediction(device_key=device_key)
        db.add(row)
    for name, value in values.items():
        setattr(row, name, value)
    db.flush()
    return row


def delete_filter_prediction(db: Session, device_key: str) -> bool:
    row = db.get(FilterPrediction, device_key)
    if row is None:
        return False
    db.delete(row)
    db.flush()
    return True
