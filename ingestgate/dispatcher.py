import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import replace
import logging
import math

from ingestgate.schemas import BatchOutcome, BatchPlan, DispatchSummary, generate_run_id, utc_now


logger = logging.getLogger(__name__)

DEFAULT_SUCCESS_THRESHOLD = 0.7
POLICIES = ("window", "pool")

PENDING = "pending"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"

JobFn = Callable[[BatchPlan], Awaitable[BatchOutcome | None]]


def plan_batches(candidate_set_size: int, batch_size: int, *, start_offset: int = 0) -> list[BatchPlan]:
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    if candidate_set_size < 0 or start_offset < 0:
        raise ValueError("candidate_set_size and start_offset must not be negative")

    plans: list[BatchPlan] = []
    for index, offset in enumerate(range(0, candidate_set_size, batch_size)):
        plans.append(
            BatchPlan(
                batch_index=index,
                offset=start_offset + offset,
                limit=min(batch_size, candidate_set_size - offset),
            )
        )
    return plans


def required_successes(total_batches: int, success_threshold: float) -> int:
    # Round first so 10 * 0.7 does not become 7.000000000000001 and then 8.
    return math.ceil(round(total_batches * success_threshold, 9))


def _failed(plan: BatchPlan, error: str) -> BatchOutcome:
    return BatchOutcome(
        batch_index=plan.batch_index,
        success=False,
        offset=plan.offset,
        limit=plan.limit,
        state=FAILED,
        error=error,
    )


async def run_isolated(plan: BatchPlan, job_fn: JobFn, *, batch_timeout: float | None = None) -> BatchOutcome:
    logger.info(
        "batch started",
        extra={"batch_index": plan.batch_index, "offset": plan.offset, "limit": plan.limit, "state": RUNNING},
    )
    try:
        if batch_timeout:
            # Cancels the in-flight awaitable so scoped sessions and connections unwind.
            async with asyncio.timeout(batch_timeout):
                result = await job_fn(plan)
        else:
            result = await job_fn(plan)
    except TimeoutError as exc:
        if not batch_timeout:
            logger.exception("batch failed", extra={"batch_index": plan.batch_index, "offset": plan.offset})
            return _failed(plan, str(exc) or exc.__class__.__name__)
        logger.error("batch timed out", extra={"batch_index": plan.batch_index, "timeout_seconds": batch_timeout})
        return _failed(plan, f"batch timed out after {batch_timeout}s")
    except Exception as exc:
        logger.exception("batch failed", extra={"batch_index": plan.batch_index, "offset": plan.offset})
        return _failed(plan, str(exc) or exc.__class__.__name__)

    if result is None:
        outcome = BatchOutcome(batch_index=plan.batch_index, success=True, offset=plan.offset, limit=plan.limit)
    else:
        outcome = replace(
            result,
            batch_index=plan.batch_index,
            offset=plan.offset,
            limit=plan.limit,
            state=SUCCEEDED if result.success else FAILED,
        )
    logger.info(
        "batch finished",
        extra={"batch_index": plan.batch_index, "state": outcome.state, "error": outcome.error},
    )
    return outcome


async def _run_windows(
    plans: list[BatchPlan], job_fn: JobFn, max_concurrency: int, batch_timeout: float | None
) -> list[BatchOutcome]:
    outcomes: list[BatchOutcome] = []
    for start in range(0, len(plans), max_concurrency):
        window = plans[start : start + max_concurrency]
        # Full-window barrier: the next window starts only after every batch here finishes.
        outcomes.extend(
            await asyncio.gather(*(run_isolated(plan, job_fn, batch_timeout=batch_timeout) for plan in window))
        )
    return outcomes


async def _run_pool(
    plans: list[BatchPlan], job_fn: JobFn, max_concurrency: int, batch_timeout: float | None
) -> list[BatchOutcome]:
    semaphore = asyncio.Semaphore(max_concurrency)

    async def guarded(plan: BatchPlan) -> BatchOutcome:
        async with semaphore:
            return await run_isolated(plan, job_fn, batch_timeout=batch_timeout)

    return list(await asyncio.gather(*(guarded(plan) for plan in plans)))


async def dispatch(
    candidate_set_size: int,
    batch_size: int,
    max_concurrency: int,
    job_fn: JobFn,
    success_threshold: float = DEFAULT_SUCCESS_THRESHOLD,
    *,
    policy: str = "window",
    batch_timeout: float | None = None,
    start_offset: int = 0,
    run_id: str | None = None,
) -> DispatchSummary:
    if max_concurrency <= 0:
        raise ValueError("max_concurrency must be positive")
    if not 0 <= success_threshold <= 1:
        raise ValueError("success_threshold must be between 0 and 1")
    if policy not in POLICIES:
        raise ValueError(f"unknown dispatch policy '{policy}'")

    run_id = run_id or generate_run_id("dispatch")
    started_at = utc_now()
    plans = plan_batches(candidate_set_size, batch_size, start_offset=start_offset)
    logger.info(
        "dispatch started",
        extra={
            "run_id": run_id,
            "total_batches": len(plans),
            "batch_size": batch_size,
            "max_concurrency": max_concurrency,
            "policy": policy,
        },
    )

    runner = _run_windows if policy == "window" else _run_pool
    outcomes = sorted(
        await runner(plans, job_fn, max_concurrency, batch_timeout),
        key=lambda outcome: outcome.batch_index,
    )

    total = len(plans)
    successful = sum(1 for outcome in outcomes if outcome.success)
    summary = DispatchSummary(
        run_id=run_id,
        total_batches=total,
        successful_batches=successful,
        failed_batches=total - successful,
        success_rate=successful / total if total else 1.0,
        success=successful >= required_successes(total, success_threshold),
        processing_time_ms=int((utc_now() - started_at).total_seconds() * 1000),
        outcomes=tuple(outcomes),
    )
    logger.info(
        "dispatch finished",
        extra={
            "run_id": run_id,
            "success": summary.success,
            "successful_batches": summary.successful_batches,
            "failed_batches": summary.failed_batches,
        },
    )
    return summary
