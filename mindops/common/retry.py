"""
Retry Policy

Explicit retry policies for calls to external model providers.

A ``RetryPolicy`` is a value (attempt ceiling, base delay, backoff kind).
``run_with_retry`` consumes one policy for ordinary failures and an optional
second policy for rate-limit responses, and returns a ``RetryOutcome``
instead of raising. Callers decide what an exhausted outcome means: the
ingestion path substitutes a zero vector, the query path raises.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

logger = logging.getLogger("mindops.common.retry")

T = TypeVar("T")


class BackoffKind(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait between tries."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff: BackoffKind = BackoffKind.LINEAR

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        if self.backoff == BackoffKind.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        else:
            delay = self.base_delay * attempt
        return min(delay, self.max_delay)


@dataclass
class RetryOutcome(Generic[T]):
    """Result of a retried call"""
    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    rate_limited: bool = False

    @property
    def error_message(self) -> str:
        return str(self.error) if self.error else ""


def is_rate_limited(error: BaseException) -> bool:
    """Detect a provider rate-limit response (HTTP 429) on SDK exceptions."""
    if getattr(error, "status_code", None) == 429:
        return True
    return type(error).__name__ == "RateLimitError"


def run_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    rate_limit_policy: Optional[RetryPolicy] = None,
    *,
    rate_limit_check: Callable[[BaseException], bool] = is_rate_limited,
    sleep: Callable[[float], Any] = time.sleep,
    label: str = "call",
) -> RetryOutcome[T]:
    """
    Call ``fn`` until it succeeds or ``policy.max_attempts`` is reached.

    Rate-limited failures wait according to ``rate_limit_policy`` (when
    given); every other failure waits according to ``policy``. Both share
    the attempt ceiling of ``policy``.
    """
    rate_limited = False
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return RetryOutcome(ok=True, value=fn(), attempts=attempt, rate_limited=rate_limited)
        except Exception as e:
            last_error = e
            limited = rate_limit_check(e)
            rate_limited = rate_limited or limited

            if attempt == policy.max_attempts:
                break

            active = rate_limit_policy if (limited and rate_limit_policy) else policy
            delay = active.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d, %s), retrying in %.1fs: %s",
                label, attempt, policy.max_attempts,
                "rate limited" if limited else "error", delay, e,
            )
            sleep(delay)

    logger.error("%s failed after %d attempts: %s", label, policy.max_attempts, last_error)
    return RetryOutcome(
        ok=False,
        error=last_error,
        attempts=policy.max_attempts,
        rate_limited=rate_limited,
    )
