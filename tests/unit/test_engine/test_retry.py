"""Unit tests for refetch.engine.retry.

Tests cover:
  - should_retry() for every shape of the retry option
  - get_retry_delay() exponential backoff, cap, and overrides
"""

from __future__ import annotations

import pytest

from refetch.engine.retry import get_retry_delay, should_retry

ERR = RuntimeError("boom")


class TestShouldRetry:
    """Whether another attempt is allowed."""

    @pytest.mark.parametrize("retry", [False, None])
    def test_disabled_never_retries(self, retry):
        assert should_retry(0, ERR, retry, 3) is False

    def test_true_uses_max_retries(self):
        assert should_retry(2, ERR, True, 3) is True
        assert should_retry(3, ERR, True, 3) is False

    def test_numeric_retry_overrides_max_retries(self):
        """retry=3 with max_retries=5: the numeric option wins."""
        assert should_retry(2, ERR, 3, 5) is True
        assert should_retry(3, ERR, 3, 5) is False

    def test_true_is_not_treated_as_one(self):
        """bool is checked before int, so True means 'use max_retries'."""
        assert should_retry(1, ERR, True, 3) is True

    def test_zero_retries(self):
        assert should_retry(0, ERR, 0, 3) is False

    def test_predicate_receives_count_and_error(self):
        seen = []

        def predicate(count, error):
            seen.append((count, error))
            return isinstance(error, TimeoutError)

        assert should_retry(4, TimeoutError(), predicate, 0) is True
        assert should_retry(0, ERR, predicate, 10) is False
        assert seen[1] == (0, ERR)


class TestGetRetryDelay:
    """Backoff schedule in milliseconds."""

    def test_first_retry_is_one_unit(self):
        assert get_retry_delay(0, None, 1000, 30000) == 1000

    def test_doubles_per_attempt(self):
        assert [get_retry_delay(i, None, 1000, 30000) for i in range(4)] == [1000, 2000, 4000, 8000]

    def test_capped_at_max_delay(self):
        assert get_retry_delay(5, None, 1000, 30000) == 30000
        assert get_retry_delay(20, None, 1000, 30000) == 30000

    def test_small_delay_unit(self):
        assert get_retry_delay(1, None, 10, 30000) == 20

    def test_fixed_delay_used_verbatim(self):
        assert get_retry_delay(7, 250, 1000, 30000) == 250

    def test_callable_delay_used_verbatim(self):
        assert get_retry_delay(3, lambda i: i * 7, 1000, 30000) == 21
