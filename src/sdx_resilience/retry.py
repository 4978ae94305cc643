from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_nothing,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.retry import retry_base


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """Configuration for retry attempt count and backoff boundaries."""

    attempts: int
    min_seconds: float
    max_seconds: float
    jitter_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.min_seconds < 0:
            raise ValueError("min_seconds must be >= 0")
        if self.max_seconds < 0:
            raise ValueError("max_seconds must be >= 0")
        if self.max_seconds < self.min_seconds:
            raise ValueError("max_seconds must be >= min_seconds")
        if self.jitter_seconds < 0:
            raise ValueError("jitter_seconds must be >= 0")


DEFAULT_CONFLICT_POLICY = RetryBackoffPolicy(
    attempts=5,
    min_seconds=0.01,
    max_seconds=0.2,
    jitter_seconds=0.05,
)


def build_exponential_jitter_retrying(
    *,
    retry: retry_base,
    policy: RetryBackoffPolicy,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` with exponential jitter backoff."""
    wait = wait_exponential_jitter(
        initial=policy.min_seconds,
        max=policy.max_seconds,
        jitter=policy.jitter_seconds,
    )
    return AsyncRetrying(
        retry=retry,
        wait=wait,
        stop=stop_after_attempt(policy.attempts),
        before_sleep=before_sleep_nothing if before_sleep is None else before_sleep,
        reraise=reraise,
    )
