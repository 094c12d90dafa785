import asyncio
import logging

from apscheduler.schedulers.blocking import BlockingScheduler

from ingestgate.config import Settings
from ingestgate.errors import IngestError
from ingestgate.jobs import get_job
from ingestgate.pipeline import JobDispatchResult, open_runner


logger = logging.getLogger(__name__)


async def _dispatch_all(settings: Settings) -> list[JobDispatchResult]:
    results: list[JobDispatchResult] = []
    async with open_runner(settings) as runner:
        for job_name in settings.scheduled_jobs:
            try:
                results.append(await runner.dispatch(get_job(job_name)))
            except (IngestError, KeyError):
                # One broken job must not stop the rest of the daily schedule.
                logger.exception("scheduled dispatch could not start", extra={"job_name": job_name})
    return results


def _run_daily_dispatch(settings: Settings) -> None:
    for result in asyncio.run(_dispatch_all(settings)):
        log = logger.info if result.summary.success else logger.error
        log(
            "scheduled dispatch completed",
            extra={
                "job_name": result.job_name,
                "run_id": result.summary.run_id,
                "success": result.summary.success,
                "successful_batches": result.summary.successful_batches,
                "total_batches": result.summary.total_batches,
            },
        )


def start_scheduler(settings: Settings, *, run_now: bool = False) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_daily_dispatch,
        "cron",
        args=[settings],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_dispatch",
        replace_existing=True,
    )

    logger.info(
        "scheduler started",
        extra={
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
            "scheduled_jobs": list(settings.scheduled_jobs),
        },
    )

    if run_now:
        _run_daily_dispatch(settings)

    scheduler.start()
