import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ingestgate.schemas import RunContext, RunMetrics
from ingestgate.store import upsert_quality_summary


logger = logging.getLogger(__name__)


class QualityAggregator:
    async def record(self, db: AsyncSession, job_name: str, run_id: str, metrics: RunMetrics) -> None:
        try:
            await upsert_quality_summary(db, job_name=job_name, run_id=run_id, metrics=metrics)
        except Exception:
            # Reporting must never mask the primary job outcome.
            logger.exception("quality summary write failed", extra={"job_name": job_name, "run_id": run_id})
            return
        logger.info(
            "quality summary recorded",
            extra={
                "job_name": job_name,
                "run_id": run_id,
                "total_records": metrics.total_records,
                "overall_quality_score": metrics.overall_quality_score,
            },
        )

    async def record_run(self, db: AsyncSession, run: RunContext) -> None:
        run.metrics.processing_time_ms = run.elapsed_ms()
        await self.record(db, run.job_name, run.run_id, run.metrics)
