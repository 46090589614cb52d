"""Retry policy shared by every external model call.

Fixed attempt count, linear backoff, no jitter: attempt N waits
N x model_retry_backoff_seconds before the next try. Only transient
failures are retried; client errors (bad key, unknown model) fail at once.

Based on tenacity's async support:
https://tenacity.readthedocs.io/en/latest/#async-and-retry
"""

from collections.abc import Callable

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_incrementing

from invoice_pipeline.shared.config import Settings

RETRYABLE_STATUS_CODES = frozenset({408, 429})


def is_transient_http_error(error: BaseException) -> bool:
    """True for network/timeout failures and 408, 429 or 5xx responses."""
    if isinstance(error, httpx.HTTPStatusError):
        code = error.response.status_code
        return code >= 500 or code in RETRYABLE_STATUS_CODES
    return isinstance(error, httpx.TransportError)


def linear_retrying(
    settings: Settings,
    is_transient: Callable[[BaseException], bool] = is_transient_http_error,
) -> AsyncRetrying:
    """Build an AsyncRetrying for transient transport errors.

    Args:
        settings: Supplies text_model_max_retries and model_retry_backoff_seconds
        is_transient: Decides whether an error is worth another attempt

    Returns:
        AsyncRetrying that re-raises the last error when attempts run out
    """
    backoff = settings.model_retry_backoff_seconds
    return AsyncRetrying(
        retry=retry_if_exception(is_transient),
        wait=wait_incrementing(start=backoff, increment=backoff),
        stop=stop_after_attempt(settings.text_model_max_retries + 1),
        reraise=True,
    )
