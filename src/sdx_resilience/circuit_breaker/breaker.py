"""Core circuit breaker implementation."""

import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import ParamSpec, TypeVar

import structlog
from tenacity import RetryCallState
from tenacity.retry import retry_if_exception_type

from sdx_resilience.circuit_breaker.clock import Clock, SystemClock
from sdx_resilience.circuit_breaker.config import CircuitBreakerConfig
from sdx_resilience.circuit_breaker.exceptions import (
    BreakerStoreError,
    StaleStateError,
)
from sdx_resilience.circuit_breaker.metrics import BreakerListener
from sdx_resilience.circuit_breaker.state import BreakerState, CircuitState
from sdx_resilience.circuit_breaker.states import (
    StateTable,
    build_state_table,
    remaining,
)
from sdx_resilience.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)
from sdx_resilience.logging import log_exception, log_info, log_warning
from sdx_resilience.retry import (
    DEFAULT_CONFLICT_POLICY,
    RetryBackoffPolicy,
    build_exponential_jitter_retrying,
)

T = TypeVar("T")
P = ParamSpec("P")

_logger = structlog.stdlib.get_logger(__name__)
_REJECTING_STATES = frozenset({CircuitState.OPEN, CircuitState.ISOLATED})


class CircuitBreaker:
    """Keyed stateful proxy around dangerous async operations.

    One breaker instance guards any number of dependencies, each identified by
    a breaker key with its own record in storage.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        storage: AbstractBreakerStorage | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        clock: Clock | None = None,
        conflict_policy: RetryBackoffPolicy | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            storage: State storage backend. Defaults to in-memory storage.
            listeners: Optional listener hooks for breaker events. Listeners
                run while the key is held and must not call back into the
                same breaker key.
            clock: Time source. Defaults to the system clock.
            conflict_policy: Backoff used by ``isolate``/``trip``/``reset``
                when a concurrent write bumps the record version.
        """
        self.config = CircuitBreakerConfig() if config is None else config
        self._storage = InMemoryBreakerStorage() if storage is None else storage
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._clock: Clock = SystemClock() if clock is None else clock
        self._conflict_policy = (
            DEFAULT_CONFLICT_POLICY if conflict_policy is None else conflict_policy
        )
        self._states: StateTable = build_state_table(self.config, self._clock)

    async def _emit_state_change(
        self, key: str, old: CircuitState, new: CircuitState
    ) -> None:
        log_info(
            _logger,
            "circuit_breaker_transition",
            breaker_key=key,
            old_state=str(old),
            new_state=str(new),
        )
        for listener in self._listeners:
            try:
                await listener.on_state_change(key, old, new)
            except Exception:
                log_exception(_logger, "circuit_breaker_listener_failed", hook="state")

    async def _emit_call_rejected(self, key: str, state: CircuitState) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(key, state)
            except Exception:
                log_exception(
                    _logger, "circuit_breaker_listener_failed", hook="rejected"
                )

    async def _emit_call_succeeded(self, key: str, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_succeeded(key, elapsed)
            except Exception:
                log_exception(
                    _logger, "circuit_breaker_listener_failed", hook="succeeded"
                )

    async def _emit_call_failed(self, key: str, exc: Exception, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_failed(key, exc, elapsed)
            except Exception:
                log_exception(_logger, "circuit_breaker_listener_failed", hook="failed")

    def _enter(
        self, record: BreakerState, target: CircuitState, now: datetime
    ) -> BreakerState:
        entered = self._states[target].entry(record, now)
        entered.previous_status = record.status
        return entered

    async def _load(self, key: str) -> BreakerState:
        try:
            record = await self._storage.get(key)
        except BreakerStoreError:
            raise
        except Exception as exc:
            raise BreakerStoreError(key, "get", repr(exc)) from exc
        if record is None:
            return self._states[CircuitState.CLOSED].entry(
                BreakerState(), self._clock.now()
            )
        return record

    async def _write(self, key: str, record: BreakerState) -> BreakerState:
        try:
            return await self._storage.set(key, record)
        except BreakerStoreError:
            raise
        except Exception as exc:
            raise BreakerStoreError(key, "set", repr(exc)) from exc

    async def _save(self, key: str, record: BreakerState) -> BreakerState:
        """Write ``record``; a version conflict drops the update instead of raising.

        Concurrent writers on a shared store may race between read and write.
        Losing one call's counter update is accepted; losing the guarded
        call's own outcome is not.
        """
        try:
            return await self._write(key, record)
        except StaleStateError as conflict:
            log_warning(
                _logger,
                "circuit_breaker_state_write_conflict",
                breaker_key=key,
                version=conflict.expected,
                stored_version=conflict.actual,
            )
            return record

    async def _advance(
        self, key: str, record: BreakerState, *, persist: bool = False
    ) -> BreakerState:
        now = self._clock.now()
        target = self._states[record.status].next(record, now)
        if target is None:
            return record
        entered = self._enter(record, target, now)
        if persist:
            entered = await self._save(key, entered)
        await self._emit_state_change(key, record.status, target)
        return entered

    async def _persist(
        self,
        key: str,
        record: BreakerState,
        call_error: Exception | None,
    ) -> None:
        try:
            await self._save(key, record)
        except BreakerStoreError as store_error:
            if call_error is None:
                raise
            raise ExceptionGroup(
                f"circuit_breaker: {key} call and state write both failed",
                [call_error, store_error],
            ) from None

    async def call(
        self,
        key: str,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke an async callable under circuit breaker protection.

        Read failures fail closed: ``func`` is not attempted and the store
        error is raised.

        Args:
            key: Breaker key identifying the guarded dependency.
            func: Dangerous async callable to execute.
            *args: Positional arguments forwarded to ``func``.
            **kwargs: Keyword arguments forwarded to ``func``.

        Returns:
            The result of ``func`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            CircuitIsolatedError: When the circuit is isolated.
            BreakerStoreError: When the record cannot be read, or cannot be
                written after an otherwise successful call. Version conflicts
                on write are logged and the counter update is dropped.
            ExceptionGroup: When ``func`` failed and the write failed too.
            Exception: The original exception from ``func`` when it is attempted
                and fails.
        """
        async with self._storage.lock(key):
            # Transitions taken before the call are saved first so an aborted
            # call does not replay them.
            record = await self._advance(key, await self._load(key), persist=True)
            state = record.status

            start = time.monotonic()
            try:
                result = await self._states[state].call(
                    key, record, func, *args, **kwargs
                )
            except Exception as exc:
                elapsed = max(time.monotonic() - start, 0.0)
                record = await self._advance(key, record)
                await self._persist(key, record, exc)
                if state in _REJECTING_STATES:
                    await self._emit_call_rejected(key, state)
                else:
                    await self._emit_call_failed(key, exc, elapsed)
                raise

            elapsed = max(time.monotonic() - start, 0.0)
            record = await self._advance(key, record)
            await self._persist(key, record, None)
            await self._emit_call_succeeded(key, elapsed)
            return result

    async def snapshot(self, key: str) -> BreakerState:
        """Return a copy of the stored record, or a fresh ``CLOSED`` one."""
        return await self._load(key)

    async def status(self, key: str) -> CircuitState:
        """Return the stored status for ``key`` without running anything."""
        record = await self._load(key)
        return record.status

    async def reset_in(self, key: str) -> float:
        """Return seconds until ``key`` may probe; ``0.0`` unless ``OPEN``."""
        record = await self._load(key)
        return remaining(record, self._clock.now())

    async def _overwrite_once(
        self, key: str, target: CircuitState
    ) -> tuple[CircuitState, BreakerState]:
        async with self._storage.lock(key):
            current = await self._load(key)
            updated = self._enter(current, target, self._clock.now())
            if current.status == target:
                updated.previous_status = current.previous_status
            return current.status, await self._write(key, updated)

    async def _overwrite(self, key: str, target: CircuitState) -> BreakerState:
        def _log_conflict(retry_state: RetryCallState) -> None:
            log_warning(
                _logger,
                "circuit_breaker_overwrite_conflict",
                breaker_key=key,
                target_state=str(target),
                attempt=retry_state.attempt_number,
            )

        retrying = build_exponential_jitter_retrying(
            retry=retry_if_exception_type(StaleStateError),
            policy=self._conflict_policy,
            before_sleep=_log_conflict,
        )
        previous, stored = await retrying(self._overwrite_once, key, target)
        if previous != target:
            await self._emit_state_change(key, previous, target)
        return stored

    async def isolate(self, key: str) -> BreakerState:
        """Force ``key`` into ``ISOLATED`` until ``reset`` is called."""
        return await self._overwrite(key, CircuitState.ISOLATED)

    async def trip(self, key: str) -> BreakerState:
        """Force ``key`` into ``OPEN`` with a fresh break duration."""
        return await self._overwrite(key, CircuitState.OPEN)

    async def reset(self, key: str) -> BreakerState:
        """Force ``key`` into a fresh ``CLOSED`` sampling window."""
        return await self._overwrite(key, CircuitState.CLOSED)
