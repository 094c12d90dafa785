from datetime import datetime, timedelta
import json

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ingestgate.db_models import LandingRecord, QualitySummaryRecord, ScrubRecord, SyncLock
from ingestgate.errors import LandingWriteError, PersistenceError, QuarantineWriteError
from ingestgate.schemas import RunMetrics, ValidationResult, utc_now


def _jsonable(value: object) -> object:
    return json.loads(json.dumps(value, default=str))


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise PersistenceError(f"insert-or-update is not supported on dialect '{dialect}'")


async def upsert_landing_record(
    db: AsyncSession,
    *,
    entity_kind: str,
    entity_id: str,
    observed_at: datetime,
    value: float | None,
    payload: dict[str, object],
    job_run_id: str,
) -> None:
    try:
        insert = _insert_for(db)
        stmt = insert(LandingRecord).values(
            entity_kind=entity_kind,
            entity_id=entity_id,
            observed_at=observed_at,
            value=value,
            payload=_jsonable(payload),
            job_run_id=job_run_id,
            inserted_at=utc_now(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["entity_kind", "entity_id", "observed_at"],
            set_={
                "value": stmt.excluded.value,
                "payload": stmt.excluded.payload,
                "job_run_id": stmt.excluded.job_run_id,
                "inserted_at": stmt.excluded.inserted_at,
            },
        )
        await db.execute(stmt)
        await db.commit()
    except (SQLAlchemyError, PersistenceError) as exc:
        await db.rollback()
        raise LandingWriteError(str(exc)) from exc


async def get_previous_value(
    db: AsyncSession,
    *,
    entity_kind: str,
    entity_id: str,
    before: datetime,
) -> float | None:
    stmt = (
        select(LandingRecord.value)
        .where(
            LandingRecord.entity_kind == entity_kind,
            LandingRecord.entity_id == entity_id,
            LandingRecord.observed_at < before,
            LandingRecord.value.is_not(None),
        )
        .order_by(LandingRecord.observed_at.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def insert_scrub_record(
    db: AsyncSession,
    *,
    target_collection: str,
    mapped_fields: dict[str, object],
    result: ValidationResult,
    original_data: object,
    job_run_id: str,
) -> None:
    try:
        db.add(
            ScrubRecord(
                target_collection=target_collection,
                mapped_fields=_jsonable(mapped_fields),
                validation_errors=list(result.errors),
                quality_score=result.quality_score,
                is_outlier=result.is_outlier,
                outlier_reason=result.outlier_reason,
                original_data=_jsonable(original_data),
                processed_at=utc_now(),
                job_run_id=job_run_id,
                retry_count=0,
            )
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise QuarantineWriteError(str(exc)) from exc


async def upsert_quality_summary(db: AsyncSession, *, job_name: str, run_id: str, metrics: RunMetrics) -> None:
    try:
        insert = _insert_for(db)
        stmt = insert(QualitySummaryRecord).values(
            job_name=job_name,
            run_id=run_id,
            run_timestamp=utc_now(),
            total_records=metrics.total_records,
            clean_records=metrics.clean_records,
            scrubbed_records=metrics.scrubbed_records,
            error_records=metrics.error_records,
            outlier_records=metrics.outlier_records,
            overall_quality_score=metrics.overall_quality_score,
            processing_time_ms=metrics.processing_time_ms,
            error_summary=_jsonable(dict(metrics.error_summary)),
        )
        # Later writes for the same run replace the counters.
        stmt = stmt.on_conflict_do_update(
            index_elements=["job_name", "run_id"],
            set_={
                column: getattr(stmt.excluded, column)
                for column in (
                    "run_timestamp",
                    "total_records",
                    "clean_records",
                    "scrubbed_records",
                    "error_records",
                    "outlier_records",
                    "overall_quality_score",
                    "processing_time_ms",
                    "error_summary",
                )
            },
        )
        await db.execute(stmt)
        await db.commit()
    except (SQLAlchemyError, PersistenceError) as exc:
        await db.rollback()
        raise QuarantineWriteError(str(exc)) from exc


async def get_quality_summary(db: AsyncSession, *, job_name: str, run_id: str) -> QualitySummaryRecord | None:
    stmt = select(QualitySummaryRecord).where(
        QualitySummaryRecord.job_name == job_name,
        QualitySummaryRecord.run_id == run_id,
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def try_acquire_lease(db: AsyncSession, *, name: str, owner: str, ttl_seconds: int) -> bool:
    now = utc_now()
    await db.execute(delete(SyncLock).where(SyncLock.name == name, SyncLock.expires_at <= now))
    db.add(SyncLock(name=name, owner=owner, acquired_at=now, expires_at=now + timedelta(seconds=ttl_seconds)))
    try:
        await db.commit()
    except IntegrityError:
        # Primary key on the lock name makes acquisition atomic.
        await db.rollback()
        return False
    return True


async def release_lease(db: AsyncSession, *, name: str, owner: str) -> None:
    await db.execute(delete(SyncLock).where(SyncLock.name == name, SyncLock.owner == owner))
    await db.commit()
