import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import timedelta
import logging
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ingestgate.aggregator import QualityAggregator
from ingestgate.config import Settings, require_runtime_config
from ingestgate.database import build_engine, build_session_factory, init_models
from ingestgate.dispatcher import dispatch
from ingestgate.errors import FetchError, LandingWriteError
from ingestgate.jobs import JobSpec, MarketData
from ingestgate.locks import lock_name, sync_lock
from ingestgate.market_data import MarketDataClient
from ingestgate.normalize import SourceRecord, chunk, load_candidates
from ingestgate.schemas import (
    BatchOutcome,
    BatchPlan,
    DispatchSummary,
    JobParams,
    RunContext,
    RunMetrics,
    ValidationContext,
    generate_run_id,
    parse_timestamp,
)
from ingestgate.scrub import ScrubRouter
from ingestgate.store import get_previous_value, upsert_landing_record
from ingestgate.validators import as_number, validate


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobDispatchResult:
    job_name: str
    summary: DispatchSummary
    metrics: RunMetrics

    def as_dict(self) -> dict[str, object]:
        return {"job": self.job_name, **self.summary.as_dict(), "metrics": self.metrics.as_dict()}


def batch_succeeded(metrics: RunMetrics) -> bool:
    # Nothing landed and nothing quarantined out of a non-empty slice.
    return not (metrics.total_records > 0 and metrics.clean_records == 0 and metrics.scrubbed_records == 0)


class IngestRunner:
    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        client: MarketData,
        *,
        router: ScrubRouter | None = None,
        aggregator: QualityAggregator | None = None,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.client = client
        self.router = router or ScrubRouter()
        self.aggregator = aggregator or QualityAggregator()

    def load_candidates(self, job: JobSpec) -> list[dict[str, object]]:
        return load_candidates(Path(self.settings.candidate_dir) / job.candidate_file)

    async def run_batch(
        self,
        job: JobSpec,
        *,
        offset: int,
        limit: int,
        params: JobParams | None = None,
        run_id: str | None = None,
        candidates: list[dict[str, object]] | None = None,
    ) -> BatchOutcome:
        if offset < 0 or limit <= 0:
            raise ValueError("offset must not be negative and limit must be positive")
        params = params or JobParams()
        run = RunContext(job_name=job.name, run_id=run_id or generate_run_id(job.name))
        if candidates is None:
            candidates = self.load_candidates(job)
        selected = candidates[offset : offset + limit]

        logger.info(
            "batch run started",
            extra={"job_name": job.name, "run_id": run.run_id, "offset": offset, "limit": limit, "mode": params.mode},
        )
        if job.locks_full_sync and params.full:
            name = lock_name(job.name, f"{offset}-{offset + limit}")
            async with sync_lock(self.engine, name, ttl_seconds=self.settings.lock_ttl_seconds):
                await self._process(job, run, selected, params)
        else:
            await self._process(job, run, selected, params)

        metrics = run.metrics
        success = batch_succeeded(metrics)
        logger.info(
            "batch run finished",
            extra={"job_name": job.name, "run_id": run.run_id, "success": success, **metrics.as_dict()},
        )
        return BatchOutcome(
            batch_index=0,
            success=success,
            offset=offset,
            limit=limit,
            run_id=run.run_id,
            metrics=metrics.as_dict(),
            error=None if success else "no records were landed or quarantined",
        )

    async def _process(
        self,
        job: JobSpec,
        run: RunContext,
        candidates: list[dict[str, object]],
        params: JobParams,
    ) -> None:
        async with self.session_factory() as db:
            try:
                valid, rejected = job.prepare(candidates)
                if rejected:
                    run.metrics.note_errors(job.rejected_code, len(rejected))

                groups = list(chunk(valid, job.group_size or len(valid)))
                for index, group in enumerate(groups):
                    if index and self.settings.request_delay_seconds > 0:
                        await asyncio.sleep(self.settings.request_delay_seconds)
                    try:
                        fetched = await job.fetch(self.client, group, params, run.started_at)
                    except FetchError as exc:
                        logger.warning(
                            "market data fetch failed",
                            extra={"job_name": job.name, "run_id": run.run_id, "group_size": len(group), "error": str(exc)},
                        )
                        run.metrics.note_errors("api_fetch_error", len(group))
                        continue

                    for item in fetched:
                        await self._gate(db, job, run, item)
            except Exception:
                run.metrics.error_summary["fatal_error"] += 1
                await self.aggregator.record_run(db, run)
                raise
            await self.aggregator.record_run(db, run)

    async def _gate(self, db: AsyncSession, job: JobSpec, run: RunContext, item: SourceRecord) -> None:
        record = item.record
        try:
            observed_at = parse_timestamp(record.get(job.observed_field))
            entity_id = job.entity_id(record)
            context = ValidationContext(
                now=run.started_at,
                freshness_window=timedelta(minutes=self.settings.freshness_window_minutes) if job.check_freshness else None,
            )
            if job.change_field and entity_id and observed_at:
                previous = await get_previous_value(
                    db, entity_kind=job.entity_kind, entity_id=entity_id, before=observed_at
                )
                context = replace(context, previous_value=previous)

            result = validate(job.entity_kind, record, context, require_identity=True)
            if result.is_valid and (entity_id is None or observed_at is None):
                result = result.with_error("missing_natural_key")

            if result.is_valid:
                try:
                    await upsert_landing_record(
                        db,
                        entity_kind=job.entity_kind,
                        entity_id=entity_id,
                        observed_at=observed_at,
                        value=as_number(record.get(job.value_field)) if job.value_field else None,
                        payload=record,
                        job_run_id=run.run_id,
                    )
                except LandingWriteError as exc:
                    logger.warning(
                        "landing write failed, quarantining record",
                        extra={"job_name": job.name, "run_id": run.run_id, "entity_id": entity_id, "error": str(exc)},
                    )
                    result = result.with_error("landing_write_failed")
                else:
                    run.metrics.note_clean(result)
                    return

            quarantined = await self.router.route(db, job.scrub_collection, record, result, run, item.raw)
            run.metrics.note_rejected(result, quarantined=quarantined)
        except Exception:
            logger.exception("record processing failed", extra={"job_name": job.name, "run_id": run.run_id})
            await db.rollback()
            run.metrics.note_errors("processing_error")

    async def dispatch(
        self,
        job: JobSpec,
        *,
        params: JobParams | None = None,
        batch_size: int | None = None,
        max_concurrency: int | None = None,
        success_threshold: float | None = None,
        policy: str = "window",
        batch_timeout: float | None = None,
    ) -> JobDispatchResult:
        settings = self.settings
        batch_size = batch_size or settings.dispatch_batch_size
        max_concurrency = max_concurrency or settings.dispatch_max_concurrency
        if success_threshold is None:
            success_threshold = settings.dispatch_success_threshold
        if batch_timeout is None and settings.batch_timeout_seconds > 0:
            batch_timeout = settings.batch_timeout_seconds

        candidates = self.load_candidates(job)
        run_id = generate_run_id(f"dispatch_{job.name}")
        if self.engine.dialect.name != "sqlite" and max_concurrency > settings.db_pool_size:
            logger.warning(
                "dispatch concurrency exceeds database pool size",
                extra={"max_concurrency": max_concurrency, "db_pool_size": settings.db_pool_size},
            )

        async def job_fn(plan: BatchPlan) -> BatchOutcome:
            return await self.run_batch(
                job,
                offset=plan.offset,
                limit=plan.limit,
                params=params,
                run_id=f"{run_id}_b{plan.batch_index:03d}",
                candidates=candidates,
            )

        summary = await dispatch(
            len(candidates),
            batch_size,
            max_concurrency,
            job_fn,
            success_threshold,
            policy=policy,
            batch_timeout=batch_timeout,
            run_id=run_id,
        )

        totals = RunMetrics()
        for outcome in summary.outcomes:
            if outcome.metrics:
                totals.merge(RunMetrics.from_dict(outcome.metrics))
            else:
                totals.error_summary["batch_failed"] += 1
        totals.processing_time_ms = summary.processing_time_ms
        async with self.session_factory() as db:
            await self.aggregator.record(db, f"{job.name}_dispatch", run_id, totals)

        return JobDispatchResult(job_name=job.name, summary=summary, metrics=totals)


@asynccontextmanager
async def open_runner(settings: Settings, *, client: MarketData | None = None) -> AsyncIterator[IngestRunner]:
    require_runtime_config(settings)
    engine = build_engine(settings)
    try:
        await init_models(engine)
        session_factory = build_session_factory(engine)
        if client is not None:
            yield IngestRunner(settings, engine, session_factory, client)
        else:
            async with MarketDataClient.from_settings(settings) as market_data:
                yield IngestRunner(settings, engine, session_factory, market_data)
    finally:
        await engine.dispose()
