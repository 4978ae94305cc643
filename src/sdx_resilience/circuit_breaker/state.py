"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"
    ISOLATED = "isolated"


@dataclass
class BreakerState:
    """Persisted per-key breaker record.

    A record is owned by its store and mutated only inside a single
    ``CircuitBreaker.call`` (or an administrative overwrite).

    Attributes:
        status: Current breaker status.
        failure_count: Failures counted in the current sampling window, or
            failed probes while ``HALF_OPEN``.
        total_count: Calls counted in the current sampling window or probe
            episode. Never smaller than ``failure_count``.
        success_count: Successful probes while ``HALF_OPEN``.
        close_at: When an ``OPEN`` breaker may start probing.
        reset_at: End of the current ``CLOSED`` sampling window.
        previous_status: Status before the most recent transition, if any.
        version: Optimistic concurrency token, bumped by every store write.
    """

    status: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    total_count: int = 0
    success_count: int = 0
    close_at: datetime | None = None
    reset_at: datetime | None = None
    previous_status: CircuitState | None = None
    version: int = 0

    def clear_counters(self) -> None:
        self.failure_count = 0
        self.total_count = 0
        self.success_count = 0

    def window_expired(self, now: datetime) -> bool:
        """Return whether the sampling window ended at or before ``now``."""
        return self.reset_at is None or now >= self.reset_at

    def roll_window(self, now: datetime, sampling_duration: float) -> None:
        """Start a fresh sampling window if the current one has expired."""
        if not self.window_expired(now):
            return
        self.clear_counters()
        self.reset_at = now + timedelta(seconds=sampling_duration)

    def failure_ratio(self) -> float | None:
        """Return ``failure_count / total_count``, or ``None`` with no calls."""
        if self.total_count == 0:
            return None
        return self.failure_count / self.total_count
