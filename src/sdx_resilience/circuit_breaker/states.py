"""Per-status behavior of the circuit breaker state machine.

Each status has exactly one handler. Handlers are stateless apart from the
shared configuration and clock; all per-key data lives in ``BreakerState``.

Transitions:
  - ``CLOSED -> OPEN`` when the failure threshold and ratio are both reached
    within the current sampling window.
  - ``OPEN -> HALF_OPEN`` once the break duration has elapsed.
  - ``HALF_OPEN -> OPEN`` on any failed probe.
  - ``HALF_OPEN -> CLOSED`` after ``success_threshold`` successful probes.
  - ``ISOLATED`` never transitions on its own.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import replace
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import ParamSpec, TypeVar, final

from sdx_resilience.circuit_breaker.clock import Clock
from sdx_resilience.circuit_breaker.config import CircuitBreakerConfig
from sdx_resilience.circuit_breaker.exceptions import (
    CircuitIsolatedError,
    CircuitOpenError,
)
from sdx_resilience.circuit_breaker.state import BreakerState, CircuitState

T = TypeVar("T")
P = ParamSpec("P")


class _StateHandler(ABC):
    status: CircuitState

    def __init__(self, config: CircuitBreakerConfig, clock: Clock) -> None:
        self._config = config
        self._clock = clock

    @abstractmethod
    def entry(self, record: BreakerState, now: datetime) -> BreakerState:
        """Return a fresh record for this status derived from ``record``."""

    @abstractmethod
    def next(self, record: BreakerState, now: datetime) -> CircuitState | None:
        """Return the status to move to, or ``None`` to stay."""

    @abstractmethod
    async def call(
        self,
        key: str,
        record: BreakerState,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Run or reject ``func`` and update ``record`` counters in place."""


@final
class _ClosedState(_StateHandler):
    status = CircuitState.CLOSED

    def entry(self, record: BreakerState, now: datetime) -> BreakerState:
        return replace(
            record,
            status=self.status,
            failure_count=0,
            total_count=0,
            success_count=0,
            reset_at=now + timedelta(seconds=self._config.sampling_duration),
        )

    def next(self, record: BreakerState, now: datetime) -> CircuitState | None:
        # Counters from an expired window are discarded by the next call.
        if record.window_expired(now):
            return None
        if record.failure_count < self._config.failure_threshold:
            return None
        ratio = record.failure_ratio()
        if ratio is None or ratio < self._config.failure_ratio:
            return None
        return CircuitState.OPEN

    async def call(
        self,
        key: str,
        record: BreakerState,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        record.roll_window(self._clock.now(), self._config.sampling_duration)
        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            record.total_count += 1
            if self._config.counts_as_failure(exc):
                record.failure_count += 1
            raise
        record.total_count += 1
        return result


@final
class _OpenState(_StateHandler):
    status = CircuitState.OPEN

    def entry(self, record: BreakerState, now: datetime) -> BreakerState:
        return replace(
            record,
            status=self.status,
            failure_count=0,
            total_count=0,
            success_count=0,
            close_at=now + timedelta(seconds=self._config.break_duration),
        )

    def next(self, record: BreakerState, now: datetime) -> CircuitState | None:
        if record.close_at is None or now >= record.close_at:
            return CircuitState.HALF_OPEN
        return None

    async def call(
        self,
        key: str,
        record: BreakerState,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        raise CircuitOpenError(key, retry_after=remaining(record, self._clock.now()))


@final
class _HalfOpenState(_StateHandler):
    status = CircuitState.HALF_OPEN

    def entry(self, record: BreakerState, now: datetime) -> BreakerState:
        return replace(
            record,
            status=self.status,
            failure_count=0,
            total_count=0,
            success_count=0,
        )

    def next(self, record: BreakerState, now: datetime) -> CircuitState | None:
        if record.failure_count > 0:
            return CircuitState.OPEN
        if record.success_count >= self._config.success_threshold:
            return CircuitState.CLOSED
        return None

    async def call(
        self,
        key: str,
        record: BreakerState,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            record.total_count += 1
            if self._config.counts_as_failure(exc):
                record.failure_count += 1
            else:
                record.success_count += 1
            raise
        record.total_count += 1
        record.success_count += 1
        return result


@final
class _IsolatedState(_StateHandler):
    status = CircuitState.ISOLATED

    def entry(self, record: BreakerState, now: datetime) -> BreakerState:
        return replace(
            record,
            status=self.status,
            failure_count=0,
            total_count=0,
            success_count=0,
        )

    def next(self, record: BreakerState, now: datetime) -> CircuitState | None:
        return None

    async def call(
        self,
        key: str,
        record: BreakerState,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        raise CircuitIsolatedError(key)


StateTable = Mapping[CircuitState, _StateHandler]


def remaining(record: BreakerState, now: datetime) -> float:
    """Return seconds until an ``OPEN`` record may probe, never negative."""
    if record.status != CircuitState.OPEN or record.close_at is None:
        return 0.0
    return max((record.close_at - now).total_seconds(), 0.0)


def build_state_table(config: CircuitBreakerConfig, clock: Clock) -> StateTable:
    """Build the read-only status-to-handler lookup used by a breaker."""
    handlers: tuple[_StateHandler, ...] = (
        _ClosedState(config, clock),
        _OpenState(config, clock),
        _HalfOpenState(config, clock),
        _IsolatedState(config, clock),
    )
    return MappingProxyType({handler.status: handler for handler in handlers})
