"""Retry policy for transient registry failures.

Rate limiting (429), server errors (5xx) and dropped connections surface as
:class:`TransientRegistryError` and are retried with jittered exponential
backoff. Authentication failures, missing content and digest mismatches are
raised immediately.

Example:
    >>> policy = create_retry_policy(max_attempts=3)
    >>> async for attempt in policy:
    ...     with attempt:
    ...         await client.list_tags("nginx")
"""

import logging

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from ..exceptions import TransientRegistryError

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def is_retryable_status(status: int) -> bool:
    """Check whether an HTTP status indicates a transient condition."""
    return status in RETRYABLE_STATUSES or 500 <= status < 600


def create_retry_policy(
    max_attempts: int = 5,
    backoff_base: float = 0.5,
    backoff_max: float = 30.0,
) -> AsyncRetrying:
    """Create a fresh retry controller.

    A controller keeps per-call state, so every request gets its own.

    Args:
        max_attempts: Total attempts including the first one
        backoff_base: Multiplier for the exponential wait, in seconds
        backoff_max: Upper bound for a single wait, in seconds

    Returns:
        AsyncRetrying that re-raises the last error once attempts run out
    """
    return AsyncRetrying(
        retry=retry_if_exception_type(TransientRegistryError),
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_random_exponential(multiplier=backoff_base, max=backoff_max),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
