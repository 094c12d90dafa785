from collections import Counter
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ingestgate.db_models import LandingRecord, QualitySummaryRecord, ScrubRecord
from ingestgate.schemas import utc_now


REPORT_TYPES = ("summary", "daily", "errors", "outliers", "recent", "health")
STALE_AFTER_HOURS = 25
LOW_QUALITY_SCORE = 80
SLOW_RUN_MS = 300_000


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _avg(value) -> float | None:
    return round(float(value), 2) if value is not None else None


async def _summary(db: AsyncSession, since, job_name: str | None) -> list[dict[str, object]]:
    stmt = (
        select(
            QualitySummaryRecord.job_name,
            func.count().label("total_runs"),
            func.avg(QualitySummaryRecord.overall_quality_score).label("avg_quality_score"),
            func.avg(QualitySummaryRecord.total_records).label("avg_total_records"),
            func.avg(QualitySummaryRecord.clean_records).label("avg_clean_records"),
            func.avg(QualitySummaryRecord.scrubbed_records).label("avg_scrubbed_records"),
            func.avg(QualitySummaryRecord.error_records).label("avg_error_records"),
            func.avg(QualitySummaryRecord.outlier_records).label("avg_outlier_records"),
            func.avg(QualitySummaryRecord.processing_time_ms).label("avg_processing_time_ms"),
            func.min(QualitySummaryRecord.run_timestamp).label("first_run"),
            func.max(QualitySummaryRecord.run_timestamp).label("last_run"),
        )
        .where(QualitySummaryRecord.run_timestamp >= since)
        .group_by(QualitySummaryRecord.job_name)
    )
    if job_name:
        stmt = stmt.where(QualitySummaryRecord.job_name == job_name)

    rows = []
    for row in (await db.execute(stmt)).all():
        rows.append(
            {
                "job_name": row.job_name,
                "total_runs": row.total_runs,
                "avg_quality_score": _avg(row.avg_quality_score),
                "avg_total_records": _avg(row.avg_total_records),
                "avg_clean_records": _avg(row.avg_clean_records),
                "avg_scrubbed_records": _avg(row.avg_scrubbed_records),
                "avg_error_records": _avg(row.avg_error_records),
                "avg_outlier_records": _avg(row.avg_outlier_records),
                "avg_processing_time_ms": _avg(row.avg_processing_time_ms),
                "first_run": _iso(row.first_run),
                "last_run": _iso(row.last_run),
            }
        )
    return sorted(rows, key=lambda row: row["avg_quality_score"] or 0, reverse=True)


async def _summaries(db: AsyncSession, since, job_name: str | None) -> list[QualitySummaryRecord]:
    stmt = select(QualitySummaryRecord).where(QualitySummaryRecord.run_timestamp >= since)
    if job_name:
        stmt = stmt.where(QualitySummaryRecord.job_name == job_name)
    return list((await db.execute(stmt)).scalars())


async def _daily(db: AsyncSession, since, job_name: str | None) -> list[dict[str, object]]:
    buckets: dict[tuple[str, str], dict[str, object]] = {}
    for summary in await _summaries(db, since, job_name):
        key = (summary.run_timestamp.date().isoformat(), summary.job_name)
        bucket = buckets.setdefault(
            key,
            {
                "date": key[0],
                "job_name": key[1],
                "runs_per_day": 0,
                "scores": [],
                "total_records": 0,
                "clean_records": 0,
                "scrubbed_records": 0,
                "error_records": 0,
            },
        )
        bucket["runs_per_day"] += 1
        bucket["scores"].append(summary.overall_quality_score)
        for column in ("total_records", "clean_records", "scrubbed_records", "error_records"):
            bucket[column] += getattr(summary, column)

    rows = []
    for bucket in buckets.values():
        scores = bucket.pop("scores")
        bucket["avg_quality_score"] = round(sum(scores) / len(scores), 2)
        rows.append(bucket)
    rows.sort(key=lambda row: row["job_name"])
    rows.sort(key=lambda row: row["date"], reverse=True)
    return rows


async def _errors(db: AsyncSession, since, job_name: str | None) -> list[dict[str, object]]:
    # error_summary is JSON; tally in Python so every dialect behaves the same.
    counts: Counter[tuple[str, str]] = Counter()
    for summary in await _summaries(db, since, job_name):
        for code, count in (summary.error_summary or {}).items():
            counts[(summary.job_name, code)] += int(count)
    return [
        {"job_name": name, "error_type": code, "error_count": count}
        for (name, code), count in counts.most_common()
    ]


async def _outliers(db: AsyncSession, since) -> list[dict[str, object]]:
    stmt = (
        select(
            ScrubRecord.target_collection,
            func.count().label("total_outliers"),
            func.avg(ScrubRecord.quality_score).label("avg_quality_score"),
        )
        .where(ScrubRecord.processed_at >= since, ScrubRecord.is_outlier.is_(True))
        .group_by(ScrubRecord.target_collection)
        .order_by(ScrubRecord.target_collection)
    )
    return [
        {
            "target_collection": row.target_collection,
            "total_outliers": row.total_outliers,
            "avg_quality_score": _avg(row.avg_quality_score),
        }
        for row in (await db.execute(stmt)).all()
    ]


async def _recent(db: AsyncSession, limit: int = 50) -> list[dict[str, object]]:
    stmt = (
        select(ScrubRecord)
        .where(ScrubRecord.processed_at >= utc_now() - timedelta(days=1))
        .order_by(ScrubRecord.processed_at.desc(), ScrubRecord.id.desc())
        .limit(limit)
    )
    return [
        {
            "target_collection": row.target_collection,
            "mapped_fields": row.mapped_fields,
            "quality_score": row.quality_score,
            "validation_errors": row.validation_errors,
            "outlier_reason": row.outlier_reason,
            "job_run_id": row.job_run_id,
            "processed_at": _iso(row.processed_at),
        }
        for row in (await db.execute(stmt)).scalars()
    ]


def health_status(
    hours_since_last_run: float, avg_quality_score: float | None, avg_processing_time_ms: float | None
) -> str:
    if hours_since_last_run > STALE_AFTER_HOURS:
        return "STALE"
    if avg_quality_score is not None and avg_quality_score < LOW_QUALITY_SCORE:
        return "LOW_QUALITY"
    if avg_processing_time_ms is not None and avg_processing_time_ms > SLOW_RUN_MS:
        return "SLOW"
    return "HEALTHY"


async def _health(db: AsyncSession, job_name: str | None) -> list[dict[str, object]]:
    now = utc_now()
    # Averages cover the last day; last runs cover all time so stopped jobs still show up.
    recent = {row["job_name"]: row for row in await _summary(db, now - timedelta(days=1), job_name)}
    stmt = select(QualitySummaryRecord.job_name, func.max(QualitySummaryRecord.run_timestamp)).group_by(
        QualitySummaryRecord.job_name
    )
    if job_name:
        stmt = stmt.where(QualitySummaryRecord.job_name == job_name)

    rows = []
    for name, last_run in (await db.execute(stmt)).all():
        hours = (now - last_run).total_seconds() / 3600
        averages = recent.get(name, {})
        avg_score = averages.get("avg_quality_score")
        avg_time = averages.get("avg_processing_time_ms")
        rows.append(
            {
                "job_name": name,
                "last_run": _iso(last_run),
                "hours_since_last_run": round(hours, 2),
                "avg_quality_score": avg_score,
                "avg_processing_time_ms": avg_time,
                "health_status": health_status(hours, avg_score, avg_time),
            }
        )
    return sorted(rows, key=lambda row: row["hours_since_last_run"], reverse=True)


async def landing_high_water_marks(db: AsyncSession) -> dict[str, str | None]:
    stmt = select(LandingRecord.entity_kind, func.max(LandingRecord.observed_at)).group_by(LandingRecord.entity_kind)
    return {kind: _iso(latest) for kind, latest in (await db.execute(stmt)).all()}


async def quality_report(
    db: AsyncSession,
    *,
    days: int = 7,
    job_name: str | None = None,
    report_type: str = "summary",
) -> dict[str, object]:
    if report_type not in REPORT_TYPES:
        raise ValueError(f"invalid report type '{report_type}', use one of: {', '.join(REPORT_TYPES)}")
    if days <= 0:
        raise ValueError("days must be positive")

    since = utc_now() - timedelta(days=days)
    if report_type == "summary":
        results = await _summary(db, since, job_name)
    elif report_type == "daily":
        results = await _daily(db, since, job_name)
    elif report_type == "errors":
        results = await _errors(db, since, job_name)
    elif report_type == "outliers":
        results = await _outliers(db, since)
    elif report_type == "recent":
        results = await _recent(db)
    else:
        results = await _health(db, job_name)

    return {
        "report_type": report_type,
        "days": days,
        "job_filter": job_name or "all",
        "generated_at": utc_now().isoformat(),
        "landing_high_water_marks": await landing_high_water_marks(db),
        "results": results,
    }
