from datetime import date as calendar_date, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from filterhours.db.base import Base
from filterhours.db.column_types import BigIntPk, UtcDateTime


class Device(Base):
    __tablename__ = "devices"
    __table_args__ = (
        CheckConstraint(
            "filter_usage_percent BETWEEN 0 AND 100",
            name="ck_devices_filter_usage_percent",
        ),
        Index("ix_devices_region_prefix", "region_prefix"),
    )

    device_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    vendor_device_id: Mapped[str | None] = mapped_column(String(128))
    timezone: Mapped[str | None] = mapped_column(String(64))
    region_prefix: Mapped[str | None] = mapped_column(String(16))
    filter_target_hours: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=100.0,
        server_default="100",
    )
    use_forced_air_for_heat: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    filter_usage_percent: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    state: Mapped["DeviceState | None"] = relationship(
        back_populates="device",
        cascade="all, delete-orphan",
        uselist=False,
    )


class DeviceState(Base):
    __tablename__ = "device_states"

    device_key: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("devices.device_key", ondelete="CASCADE"),
        primary_key=True,
    )
    last_event_ts: Mapped[datetime | None] = mapped_column(UtcDateTime)
    open_session_id: Mapped[int | None] = mapped_column(BigInteger)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    hours_used_total: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        server_default="0",
    )
    filter_hours_used: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        server_default="0",
    )
    last_reset_ts: Mapped[datetime | None] = mapped_column(UtcDateTime)
    last_seen_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    is_reachable: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    device: Mapped[Device] = relationship(back_populates="state")


class EquipmentEvent(Base):
    __tablename__ = "equipment_events"
    __table_args__ = (
        UniqueConstraint("source_event_id", name="uq_equipment_events_source_event_id"),
        CheckConstraint(
            "runtime_seconds IS NULL OR runtime_seconds >= 0",
            name="ck_equipment_events_runtime_seconds",
        ),
        Index("ix_equipment_events_device_recorded", "device_key", "recorded_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    device_key: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("devices.device_key", ondelete="CASCADE"),
        nullable=False,
    )
    source_event_id: Mapped[str | None] = mapped_column(String(128))
    equipment_status: Mapped[str | None] = mapped_column(String(128))
    previous_status: Mapped[str | None] = mapped_column(String(128))
    is_active: Mapped[bool | None] = mapped_column(Boolean)
    runtime_seconds: Mapped[int | None] = mapped_column(Integer)
    thermostat_mode: Mapped[str | None] = mapped_column(String(32))
    thermostat_setting: Mapped[str | None] = mapped_column(String(16))
    temperature_f: Mapped[float | None] = mapped_column(Float)
    humidity: Mapped[float | None] = mapped_column(Float)
    hvac_mode: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="unknown",
        server_default="unknown",
    )
    fan_assisted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    recorded_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        server_default=func.now(),
    )


class RuntimeSession(Base):
    __tablename__ = "runtime_sessions"
    __table_args__ = (
        CheckConstraint(
            "mode IN ('heat','cool','fan','auxheat','unknown')",
            name="ck_runtime_sessions_mode",
        ),
        CheckConstraint(
            "terminated_reason IS NULL OR terminated_reason IN ('tail_close','posted_runtime')",
            name="ck_runtime_sessions_terminated_reason",
        ),
        Index("ix_runtime_sessions_device_started", "device_key", "started_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    device_key: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("devices.device_key", ondelete="CASCADE"),
        nullable=False,
    )
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    equipment_status: Mapped[str | None] = mapped_column(String(128))
    fan_assisted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    started_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    runtime_seconds: Mapped[int | None] = mapped_column(Integer)
    tick_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    last_tick_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    off_observed_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    terminated_reason: Mapped[str | None] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class DailySummary(Base):
    __tablename__ = "summaries_daily"
    __table_args__ = (
        UniqueConstraint("device_key", "date", name="uq_summaries_daily_device_date"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    device_key: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("devices.device_key", ondelete="CASCADE"),
        nullable=False,
    )
    date: Mapped[calendar_date] = mapped_column(Date, nullable=False)
    runtime_seconds_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_seconds_heat: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_seconds_cool: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_seconds_fan: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_seconds_auxheat: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_seconds_unknown: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_seconds_mode_heat: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_seconds_mode_cool: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_seconds_mode_auto: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_seconds_mode_off: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_seconds_mode_away: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_seconds_mode_eco: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_seconds_mode_other: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_sessions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_temperature: Mapped[float | None] = mapped_column(Float)
    avg_humidity: Mapped[float | None] = mapped_column(Float)
    validated_runtime_seconds_total: Mapped[int | None] = mapped_column(Integer)
    validated_runtime_seconds_heat: Mapped[int | None] = mapped_column(Integer)
    validated_runtime_seconds_cool: Mapped[int | None] = mapped_column(Integer)
    validated_runtime_seconds_auxheat: Mapped[int | None] = mapped_column(Integer)
    validated_runtime_seconds_fan: Mapped[int | None] = mapped_column(Integer)
    validation_source: Mapped[str | None] = mapped_column(String(64))
    validation_interval_count: Mapped[int | None] = mapped_column(Integer)
    validation_coverage_percent: Mapped[float | None] = mapped_column(Float)
    validation_discrepancy_seconds: Mapped[int | None] = mapped_column(Integer)
    validation_performed_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    is_corrected: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    corrected_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    # Session-derived total that a correction replaced.
    precorrection_runtime_seconds_total: Mapped[int | None] = mapped_column(Integer)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)


class HourlySummary(Base):
    __tablename__ = "summaries_hourly"
    __table_args__ = (
        UniqueConstraint("device_key", "summary_hour", name="uq_summaries_hourly_device_hour"),
        Index("ix_summaries_hourly_summary_hour", "summary_hour"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    device_key: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("devices.device_key", ondelete="CASCADE"),
        nullable=False,
    )
    summary_hour: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    runtime_seconds_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    runtime_sessions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_temperature: Mapped[float | None] = mapped_column(Float)
    min_temperature: Mapped[float | None] = mapped_column(Float)
    max_temperature: Mapped[float | None] = mapped_column(Float)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)


class FilterPrediction(Base):
    __tablename__ = "filter_predictions"
    __table_args__ = (
        CheckConstraint(
            "predicted_health_percent BETWEEN 0 AND 100",
            name="ck_filter_predictions_health_percent",
        ),
    )

    device_key: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("devices.device_key", ondelete="CASCADE"),
        primary_key=True,
    )
    region_prefix: Mapped[str | None] = mapped_column(String(16))
    window_start_date: Mapped[calendar_date] = mapped_column(Date, nullable=False)
    last_reset_ts: Mapped[datetime | None] = mapped_column(UtcDateTime)
    runtime_since_reset_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    region_avg_runtime_seconds: Mapped[float | None] = mapped_column(Float)
    expected_life_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    predicted_health_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    is_anomalous: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    computed_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)


class RegionAverage(Base):
    __tablename__ = "region_averages"
    __table_args__ = (
        UniqueConstraint("region_prefix", "date", name="uq_region_averages_region_date"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    region_prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    date: Mapped[calendar_date] = mapped_column(Date, nullable=False)
    avg_runtime_seconds: Mapped[float | None] = mapped_column(Float)
    avg_temperature: Mapped[float | None] = mapped_column(Float)
    avg_humidity: Mapped[float | None] = mapped_column(Float)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)


class GroundTruthInterval(Base):
    __tablename__ = "ground_truth_intervals"
    __table_args__ = (
        UniqueConstraint(
            "device_key",
            "interval_start",
            name="uq_ground_truth_intervals_device_interval",
        ),
        CheckConstraint(
            "aux_heat1_seconds BETWEEN 0 AND 300"
            " AND aux_heat2_seconds BETWEEN 0 AND 300"
            " AND aux_heat3_seconds BETWEEN 0 AND 300"
            " AND comp_cool1_seconds BETWEEN 0 AND 300"
            " AND comp_cool2_seconds BETWEEN 0 AND 300"
            " AND comp_heat1_seconds BETWEEN 0 AND 300"
            " AND comp_heat2_seconds BETWEEN 0 AND 300"
            " AND fan_seconds BETWEEN 0 AND 300",
            name="ck_ground_truth_intervals_seconds",
        ),
        Index("ix_ground_truth_intervals_device_date", "device_key", "report_date"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    device_key: Mapped[str] = mapped_column(String(64), nullable=False)
    report_date: Mapped[calendar_date] = mapped_column(Date, nullable=False)
    interval_start: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    aux_heat1_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    aux_heat2_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    aux_heat3_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comp_cool1_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comp_cool2_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comp_heat1_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comp_heat2_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fan_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    data_source: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="vendor_runtime_report",
        server_default="vendor_runtime_report",
    )


class FilterReset(Base):
    __tablename__ = "filter_resets"
    __table_args__ = (Index("ix_filter_resets_device_triggered", "device_key", "triggered_at"),)

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    device_key: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("devices.device_key", ondelete="CASCADE"),
        nullable=False,
    )
    triggered_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="manual")
    filter_hours_at_reset: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class WorkerRun(Base):
    __tablename__ = "worker_runs"
    __table_args__ = (
        CheckConstraint("status IN ('success','failed')", name="ck_worker_runs_status"),
        Index("ix_worker_runs_name_started", "worker_name", "started_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    worker_name: Mapped[str] = mapped_column(String(64), nullable=False)
    started_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(UtcDateTime)
    duration_seconds: Mapped[float | None] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    devices_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    details_json: Mapped[dict | None] = mapped_column(JSON)
    error_text: Mapped[str | None] = mapped_column(Text)
