"""Retry policy — whether and when a failed fetch is retried.

Both functions are pure and deterministic (no jitter) so backoff schedules
can be asserted exactly in tests.
"""

from __future__ import annotations

from refetch.models.query import RetryDelayOption, RetryOption


def should_retry(
    failure_count: int,
    error: BaseException,
    retry: RetryOption,
    max_retries: int,
) -> bool:
    """Decide whether another attempt is allowed.

    Args:
        failure_count: Retries already spent for the current fetch.
        error:         The exception raised by the last attempt.
        retry:         ``False``/``None`` never retries; ``True`` retries while
                       ``failure_count < max_retries``; an ``int`` replaces
                       ``max_retries``; a callable ``(failure_count, error)``
                       decides on its own.
        max_retries:   Retry budget used when ``retry is True``.
    """
    if retry is None or retry is False:
        return False
    if retry is True:
        return failure_count < max_retries
    if callable(retry):
        return bool(retry(failure_count, error))
    return failure_count < int(retry)


def get_retry_delay(
    attempt_index: int,
    retry_delay: RetryDelayOption,
    delay_unit: int,
    max_retry_delay: int,
) -> int:
    """Milliseconds to wait before retry number *attempt_index* (0-based).

    A callable ``retry_delay`` or a fixed number is used verbatim; otherwise
    exponential backoff ``min(delay_unit * 2**attempt_index, max_retry_delay)``.
    """
    if callable(retry_delay):
        return int(retry_delay(attempt_index))
    if retry_delay is not None:
        return int(retry_delay)
    return min(delay_unit * 2**attempt_index, max_retry_delay)
