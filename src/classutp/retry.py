"""Bounded, fixed-delay retry combinator built on tenacity.

Steps that need to tolerate transient failures (a slow navigation, an element
that renders after an async delay) go through ``retry_async`` instead of
hand-written loops, so attempt counting and backoff behave the same everywhere.
"""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    retry_never,
    stop_after_attempt,
    wait_fixed,
)

from src.classutp.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


def _last_outcome(retry_state: RetryCallState) -> Any:
    # Returns the last result, or re-raises the last exception, once retries run out
    return retry_state.outcome.result()


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None and outcome.failed else None
    log.warning(
        "step_retry",
        operation=getattr(retry_state.fn, "__name__", "operation"),
        attempt=retry_state.attempt_number,
        error=type(error).__name__ if error else None,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
    )


async def retry_async(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    retries: int,
    delay: float,
    retry_on: tuple[type[BaseException], ...] = (),
    retry_if: Callable[[T], bool] | None = None,
    **kwargs: Any,
) -> T:
    """Call ``fn`` up to ``retries + 1`` times with a fixed delay between attempts.

    Args:
        fn: Coroutine function to call.
        retries: Extra attempts after the first one (0 disables retrying).
        delay: Seconds to sleep between attempts.
        retry_on: Exception types that trigger another attempt. Anything else
            propagates immediately.
        retry_if: Predicate on a successful result that triggers another
            attempt (e.g. ``lambda v: v is None`` for a not-yet-rendered field).

    Returns:
        The first accepted result, or the last result if the predicate kept
        rejecting it until attempts ran out.

    Raises:
        The last exception raised by ``fn`` once attempts are exhausted.
    """
    condition = retry_if_exception_type(retry_on) if retry_on else retry_never
    if retry_if is not None:
        condition = condition | retry_if_result(retry_if)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_fixed(delay),
        retry=condition,
        before_sleep=_log_retry,
        retry_error_callback=_last_outcome,
    )
    return await retrying(fn, *args, **kwargs)
