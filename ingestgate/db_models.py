from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ingestgate.schemas import utc_now


class Base(DeclarativeBase):
    pass


class LandingRecord(Base):
    __tablename__ = "landing_records"
    __table_args__ = (
        UniqueConstraint("entity_kind", "entity_id", "observed_at", name="uq_landing_natural_key"),
        Index("ix_landing_entity_observed", "entity_kind", "entity_id", "observed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_kind: Mapped[str] = mapped_column(String(32))
    entity_id: Mapped[str] = mapped_column(String(512))
    observed_at: Mapped[datetime] = mapped_column(DateTime)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    payload: Mapped[dict[str, object]] = mapped_column(JSON)
    job_run_id: Mapped[str] = mapped_column(String(128))
    inserted_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class ScrubRecord(Base):
    __tablename__ = "scrub_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target_collection: Mapped[str] = mapped_column(String(64), index=True)
    mapped_fields: Mapped[dict[str, object]] = mapped_column(JSON)
    validation_errors: Mapped[list[str]] = mapped_column(JSON)
    quality_score: Mapped[int] = mapped_column(Integer, index=True)
    is_outlier: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    outlier_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_data: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)
    job_run_id: Mapped[str] = mapped_column(String(128), index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)


class QualitySummaryRecord(Base):
    __tablename__ = "data_quality_summary"
    __table_args__ = (UniqueConstraint("job_name", "run_id", name="uq_quality_summary_run"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(128), index=True)
    run_id: Mapped[str] = mapped_column(String(128))
    run_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)
    total_records: Mapped[int] = mapped_column(Integer, default=0)
    clean_records: Mapped[int] = mapped_column(Integer, default=0)
    scrubbed_records: Mapped[int] = mapped_column(Integer, default=0)
    error_records: Mapped[int] = mapped_column(Integer, default=0)
    outlier_records: Mapped[int] = mapped_column(Integer, default=0)
    overall_quality_score: Mapped[float] = mapped_column(Float, default=0.0)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    error_summary: Mapped[dict[str, int]] = mapped_column(JSON)


class SyncLock(Base):
    __tablename__ = "sync_locks"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str] = mapped_column(String(128))
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
