from collections.abc import AsyncIterator, Callable
from datetime import date
import logging

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ingestgate.config import Settings, get_settings
from ingestgate.database import build_engine, build_session_factory, get_db, init_models
from ingestgate.dispatcher import POLICIES
from ingestgate.errors import ConfigurationError, FatalError, LockContentionError
from ingestgate.jobs import JOBS, MarketData
from ingestgate.pipeline import open_runner
from ingestgate.report import REPORT_TYPES, quality_report
from ingestgate.schemas import JobParams, generate_run_id


logger = logging.getLogger(__name__)


def _error(status_code: int, request: Request, message: str, **extra: object) -> JSONResponse:
    body = {"success": False, "run_id": getattr(request.state, "run_id", None), "error": message, **extra}
    return JSONResponse(status_code=status_code, content=body)


def create_app(
    settings: Settings | None = None,
    *,
    client_factory: Callable[[Settings], MarketData] | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=settings.app_name)

    @app.exception_handler(FatalError)
    async def fatal_error(request: Request, exc: FatalError) -> JSONResponse:
        logger.error("job setup failed", extra={"path": request.url.path, "error": str(exc)})
        missing = exc.missing if isinstance(exc, ConfigurationError) else []
        return _error(500, request, str(exc), missing=missing)

    @app.exception_handler(LockContentionError)
    async def lock_held(request: Request, exc: LockContentionError) -> JSONResponse:
        return _error(423, request, str(exc), lock_name=exc.lock_name)

    @app.exception_handler(ValueError)
    async def bad_request(request: Request, exc: ValueError) -> JSONResponse:
        return _error(400, request, str(exc))

    def job_params(
        day: date | None = None,
        since: date | None = None,
        start_date: date | None = Query(None, alias="startDate"),
        end_date: date | None = Query(None, alias="endDate"),
        full: bool = False,
        recent_points: int | None = Query(None, ge=1),
    ) -> JobParams:
        return JobParams(
            day=day,
            since=since,
            start_date=start_date,
            end_date=end_date,
            full=full,
            recent_points=recent_points,
        )

    async def db_session() -> AsyncIterator[AsyncSession]:
        if not settings.database_url:
            raise ConfigurationError(["DATABASE_URL"])
        engine = build_engine(settings)
        try:
            await init_models(engine)
            async for db in get_db(build_session_factory(engine)):
                yield db
        finally:
            await engine.dispose()

    def market_data() -> MarketData | None:
        return client_factory(settings) if client_factory else None

    @app.get("/health")
    async def health() -> dict[str, object]:
        return {"status": "ok", "app": settings.app_name, "jobs": sorted(JOBS)}

    @app.get("/jobs/{job_name}")
    async def run_job(
        job_name: str,
        request: Request,
        offset: int = Query(0, ge=0),
        limit: int | None = Query(None, ge=1),
        params: JobParams = Depends(job_params),
    ):
        job = JOBS.get(job_name)
        if job is None:
            return _error(404, request, f"unknown job '{job_name}'")

        request.state.run_id = generate_run_id(job.name)
        async with open_runner(settings, client=market_data()) as runner:
            outcome = await runner.run_batch(
                job,
                offset=offset,
                limit=limit or settings.dispatch_batch_size,
                params=params,
                run_id=request.state.run_id,
            )
        return {
            "success": outcome.success,
            "job": job.name,
            "run_id": outcome.run_id,
            "offset": outcome.offset,
            "limit": outcome.limit,
            "mode": params.mode,
            "metrics": outcome.metrics,
            "error": outcome.error,
        }

    @app.get("/dispatch/{job_name}")
    async def dispatch_job(
        job_name: str,
        request: Request,
        batch_size: int | None = Query(None, ge=1),
        max_concurrency: int | None = Query(None, ge=1),
        policy: str = Query("window", pattern=f"^({'|'.join(POLICIES)})$"),
        params: JobParams = Depends(job_params),
    ):
        job = JOBS.get(job_name)
        if job is None:
            return _error(404, request, f"unknown job '{job_name}'")

        async with open_runner(settings, client=market_data()) as runner:
            result = await runner.dispatch(
                job,
                params=params,
                batch_size=batch_size,
                max_concurrency=max_concurrency,
                policy=policy,
            )
        return result.as_dict()

    @app.get("/quality")
    async def quality(
        days: int = Query(7, ge=1),
        job: str | None = None,
        report_type: str = Query("summary", alias="type", pattern=f"^({'|'.join(REPORT_TYPES)})$"),
        db: AsyncSession = Depends(db_session),
    ) -> dict[str, object]:
        return await quality_report(db, days=days, job_name=job, report_type=report_type)

    return app
