"""Tests for retry classification and backoff."""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from coursecove.jobs.retry import (
    ErrorCategory,
    RetryPolicy,
    backoff_schedule,
    calculate_backoff,
    categorize_error,
    should_retry,
)
from coursecove.platform.errors import DependencyNotReady, ValidationFailed

NO_JITTER = RetryPolicy(max_attempts=5, base_delay_seconds=1.0, jitter_factor=0.0)


class TestCategorize:

    @pytest.mark.parametrize("error,category", [
        (DependencyNotReady(), ErrorCategory.DEPENDENCY_NOT_READY),
        (OperationalError("SELECT 1", {}, Exception("gone")), ErrorCategory.CONNECTION),
        (ConnectionError(), ErrorCategory.CONNECTION),
        (ValidationFailed(), ErrorCategory.INVALID_PAYLOAD),
        (KeyError("id"), ErrorCategory.INVALID_PAYLOAD),
        (RuntimeError("boom"), ErrorCategory.UNKNOWN),
    ])
    def test_categories(self, error, category):
        assert categorize_error(error) == category


class TestBackoff:

    def test_dependency_schedule(self):
        assert backoff_schedule(NO_JITTER) == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        policy = RetryPolicy(base_delay_seconds=30.0, max_delay_seconds=100.0, jitter_factor=0.0)
        assert calculate_backoff(10, policy) == 100.0

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay_seconds=30.0, jitter_factor=0.25)
        with patch("coursecove.jobs.retry.random.uniform", side_effect=lambda a, b: b):
            assert calculate_backoff(0, policy) == 37.5
        with patch("coursecove.jobs.retry.random.uniform", side_effect=lambda a, b: a):
            assert calculate_backoff(1, policy) == 45.0


class TestShouldRetry:

    def test_retries_transient(self):
        decision = should_retry(DependencyNotReady(), attempts=1, policy=NO_JITTER)
        assert decision.should_retry is True
        assert decision.delay_seconds == 1.0
        assert decision.next_attempt_at is not None

    def test_invalid_payload_never_retried(self):
        decision = should_retry(ValidationFailed("bad"), attempts=1, policy=NO_JITTER)
        assert decision.should_retry is False
        assert decision.next_attempt_at is None

    def test_budget_exhausted(self):
        decision = should_retry(RuntimeError("boom"), attempts=5, policy=NO_JITTER)
        assert decision.should_retry is False
        assert "exhausted" in decision.reason
