"""Retry policy shared by webhook ingestion and reconciliation fetches."""

import logging

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from app.billing.errors import ConflictError, TransientUpstreamError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS: tuple[type[Exception], ...] = (ConflictError, TransientUpstreamError)


def retrying(
    max_attempts: int,
    delay_seconds: float,
    retry_on: tuple[type[Exception], ...] = RETRYABLE_ERRORS,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` that re-raises the last error once attempts run out.

    ``max_attempts`` is the total number of attempts, not the number of retries.

    Usage::

        async for attempt in retrying(3, 5.0):
            with attempt:
                await do_work()
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(max_attempts, 1)),
        wait=wait_fixed(delay_seconds),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
