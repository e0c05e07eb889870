"""
Retry policy and backoff calculation for webhook event processing.

Two loops use this module:
- the dependency wait inside one processing attempt (membership events
  waiting for their user/organization rows): no jitter, delays
  base * 2^attempt, i.e. 1s/2s/4s/8s/16s with the defaults
- the outer per-event retry budget run by the webhook worker: jittered
  exponential backoff, then a terminal FAILED ledger row

Error classification:
- DependencyNotReady, database connectivity errors -> retry with backoff
- ValidationFailed / malformed payloads -> fail immediately
- anything else -> retry until the budget is exhausted

Backoff formula: min(base_delay * (2^attempt) +/- jitter, max_delay)
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import List, Optional

from sqlalchemy.exc import OperationalError, DisconnectionError

from coursecove.platform.errors import DependencyNotReady, ValidationFailed

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
BASE_DELAY_SECONDS = 30.0
MAX_DELAY_SECONDS = 3600.0
JITTER_FACTOR = 0.25


class ErrorCategory(str, Enum):
    """Error classification for retry decisions."""
    DEPENDENCY_NOT_READY = "dependency_not_ready"
    CONNECTION = "connection"
    INVALID_PAYLOAD = "invalid_payload"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy configuration.

    Attributes:
        max_attempts: Total attempts before giving up (first try included)
        base_delay_seconds: Delay after the first failed attempt
        max_delay_seconds: Maximum delay cap
        jitter_factor: Random jitter factor (0.25 = +/- 25%)
    """
    max_attempts: int = MAX_ATTEMPTS
    base_delay_seconds: float = BASE_DELAY_SECONDS
    max_delay_seconds: float = MAX_DELAY_SECONDS
    jitter_factor: float = JITTER_FACTOR


@dataclass
class RetryDecision:
    """
    Result of retry evaluation.

    Attributes:
        should_retry: Whether to schedule another attempt
        delay_seconds: Seconds to wait before the next attempt
        next_attempt_at: Absolute timestamp for the next attempt
        reason: Human-readable explanation
    """
    should_retry: bool
    delay_seconds: float
    next_attempt_at: Optional[datetime]
    reason: str


def categorize_error(error: BaseException) -> ErrorCategory:
    if isinstance(error, DependencyNotReady):
        return ErrorCategory.DEPENDENCY_NOT_READY
    if isinstance(error, (OperationalError, DisconnectionError, ConnectionError, TimeoutError)):
        return ErrorCategory.CONNECTION
    if isinstance(error, (ValidationFailed, KeyError, ValueError, TypeError)):
        return ErrorCategory.INVALID_PAYLOAD
    return ErrorCategory.UNKNOWN


def calculate_backoff(attempt: int, policy: RetryPolicy = RetryPolicy()) -> float:
    """
    Delay before the next attempt.

    Args:
        attempt: Number of attempts already failed, minus one (0-indexed)
        policy: Retry policy configuration

    Returns:
        Delay in seconds
    """
    delay = policy.base_delay_seconds * (2 ** attempt)

    if policy.jitter_factor:
        jitter_range = delay * policy.jitter_factor
        delay = delay + random.uniform(-jitter_range, jitter_range)

    return max(min(delay, policy.max_delay_seconds), 0.0)


def backoff_schedule(policy: RetryPolicy) -> List[float]:
    """Waits between consecutive attempts: max_attempts - 1 entries."""
    return [calculate_backoff(i, policy) for i in range(policy.max_attempts - 1)]


def should_retry(
    error: BaseException,
    attempts: int,
    policy: RetryPolicy = RetryPolicy(),
) -> RetryDecision:
    """
    Decide whether a failed event gets another attempt.

    Args:
        error: The exception raised by the failed attempt
        attempts: Attempts made so far, including the one that just failed
        policy: Retry policy configuration
    """
    category = categorize_error(error)

    if category == ErrorCategory.INVALID_PAYLOAD:
        return RetryDecision(
            should_retry=False,
            delay_seconds=0,
            next_attempt_at=None,
            reason=f"Invalid payload - not retried: {error}",
        )

    if attempts >= policy.max_attempts:
        return RetryDecision(
            should_retry=False,
            delay_seconds=0,
            next_attempt_at=None,
            reason=f"Max attempts ({policy.max_attempts}) exhausted",
        )

    delay = calculate_backoff(attempts - 1, policy)
    return RetryDecision(
        should_retry=True,
        delay_seconds=delay,
        next_attempt_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
        reason=(
            f"{category.value} - retry in {delay:.0f}s "
            f"(attempt {attempts}/{policy.max_attempts})"
        ),
    )


def log_retry_decision(webhook_id: str, event_type: str, decision: RetryDecision) -> None:
    log_extra = {
        "webhook_id": webhook_id,
        "event_type": event_type,
        "should_retry": decision.should_retry,
        "delay_seconds": decision.delay_seconds,
        "reason": decision.reason,
    }
    if decision.next_attempt_at:
        log_extra["next_attempt_at"] = decision.next_attempt_at.isoformat()

    if decision.should_retry:
        logger.info("Webhook event scheduled for retry", extra=log_extra)
    else:
        logger.error("Webhook event failed permanently", extra=log_extra)
