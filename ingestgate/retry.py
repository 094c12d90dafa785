import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar


T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    pass


async def run_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    backoff_seconds: float,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
) -> T:
    last_error: Exception | None = None

    for attempt in range(1, max_retries + 2):
        try:
            return await fn()
        except Exception as exc:
            last_error = exc
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)

            retry_allowed = True if should_retry is None else should_retry(exc)
            if attempt > max_retries or not retry_allowed:
                break
            await asyncio.sleep(backoff_seconds * attempt)

    raise RetryExhaustedError(str(last_error)) from last_error
