"""Tenacity retry wrapper driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig
from .errors import NetworkError

logger = structlog.get_logger()


def _log_backoff(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "retrying_after_error",
        attempt=state.attempt_number,
        wait_seconds=round(state.next_action.sleep, 2) if state.next_action else None,
        error=str(exc),
        error_type=type(exc).__name__ if exc else None,
    )


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (NetworkError,),
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Only *retryable_exceptions* are retried; anything else propagates on the
    first attempt.  After the last attempt the original exception is
    re-raised, not wrapped in ``RetryError``.

    Usage::

        @with_retry(settings.retry)
        async def attempt() -> None: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        before_sleep=_log_backoff,
        reraise=True,
    )
