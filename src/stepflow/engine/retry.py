"""Retry policy — decides whether a failed attempt is tried again, and when.

The engine here does no I/O: it only computes the next action. The scheduler
awaits the returned delay on its own sleep function.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from stepflow.engine.errors import CapabilityError
from stepflow.engine.models import BackoffStrategy, RetryConfig


class RetryAction(str, Enum):
    RETRY = "retry"
    GIVE_UP = "give_up"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay: float = 0.0
    reason: str = ""

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY


def compute_delay(retry: RetryConfig, attempt: int) -> float:
    """Delay before the attempt following ``attempt`` (1-based).

    Fixed: ``delay``. Exponential: ``delay * 2 ** (attempt - 1)``.
    Both are capped by ``max_delay`` when set.
    """
    if retry.backoff == BackoffStrategy.EXPONENTIAL:
        delay = retry.delay * (2 ** (max(attempt, 1) - 1))
    else:
        delay = retry.delay
    if retry.max_delay is not None:
        delay = min(delay, retry.max_delay)
    return delay


class RetryPolicyEngine:
    """Maps (retry config, attempts made, error) to retry-after or give-up."""

    def decide(
        self,
        retry: RetryConfig,
        attempt: int,
        error: BaseException | None = None,
    ) -> RetryDecision:
        """Decide what happens after attempt number ``attempt`` failed with ``error``."""
        if isinstance(error, CapabilityError) and not error.is_transient:
            return RetryDecision(RetryAction.GIVE_UP, reason="permanent error")
        if attempt >= retry.max_attempts:
            return RetryDecision(
                RetryAction.GIVE_UP,
                reason=f"exhausted {retry.max_attempts} attempt(s)",
            )
        return RetryDecision(
            RetryAction.RETRY,
            delay=compute_delay(retry, attempt),
            reason=f"attempt {attempt}/{retry.max_attempts} failed",
        )
