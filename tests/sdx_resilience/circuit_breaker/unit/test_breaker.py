import asyncio

import pytest

import sdx_resilience.circuit_breaker.breaker as breaker_module
from sdx_resilience.circuit_breaker import (
    BreakerState,
    BreakerStoreError,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitIsolatedError,
    CircuitOpenError,
    CircuitState,
    InMemoryBreakerStorage,
    StaleStateError,
)
from sdx_resilience.retry import RetryBackoffPolicy
from tests.sdx_resilience.support.fakes import (
    FakeClock,
    FakeLogger,
    RecordingListener,
)

pytestmark = pytest.mark.asyncio


class _Counter:
    def __init__(self) -> None:
        self.calls = 0

    async def ok(self) -> str:
        self.calls += 1
        return "ok"

    async def fail(self) -> None:
        self.calls += 1
        raise RuntimeError("nope")


class _FlakyStorage(InMemoryBreakerStorage):
    def __init__(self) -> None:
        super().__init__()
        self.fail_get = False
        self.fail_set = False
        self.stale_writes = 0

    async def get(self, key: str) -> BreakerState | None:
        if self.fail_get:
            raise BreakerStoreError(key, "get", "boom")
        return await super().get(key)

    async def set(self, key: str, record: BreakerState) -> BreakerState:
        if self.fail_set:
            raise BreakerStoreError(key, "set", "boom")
        if self.stale_writes > 0:
            self.stale_writes -= 1
            raise StaleStateError(key, expected=record.version, actual=-1)
        return await super().set(key, record)


class _BrokenBackendStorage(InMemoryBreakerStorage):
    async def get(self, key: str) -> BreakerState | None:
        raise OSError("disk gone")


def _breaker(
    clock: FakeClock,
    *,
    storage: InMemoryBreakerStorage | None = None,
    listener: RecordingListener | None = None,
    **overrides: object,
) -> CircuitBreaker:
    values: dict[str, object] = {
        "failure_threshold": 3,
        "success_threshold": 3,
        "break_duration": 5.0,
        "sampling_duration": 10.0,
    }
    values.update(overrides)
    return CircuitBreaker(
        CircuitBreakerConfig(**values),  # type: ignore[arg-type]
        storage=storage,
        listeners=[listener] if listener is not None else None,
        clock=clock,
    )


async def test_unknown_key_is_closed_with_no_reset_delay(clock: FakeClock) -> None:
    breaker = _breaker(clock)

    assert await breaker.status("svc") == CircuitState.CLOSED
    assert await breaker.reset_in("svc") == 0.0


async def test_closed_open_half_open_closed_round_trip(
    clock: FakeClock, listener: RecordingListener
) -> None:
    breaker = _breaker(clock, listener=listener)
    counter = _Counter()

    for _ in range(3):
        with pytest.raises(RuntimeError, match="nope"):
            await breaker.call("svc", counter.fail)
    assert await breaker.status("svc") == CircuitState.OPEN
    assert listener.transitions == [(CircuitState.CLOSED, CircuitState.OPEN)]

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call("svc", counter.ok)
    assert counter.calls == 3
    assert excinfo.value.key == "svc"
    assert excinfo.value.retry_after == pytest.approx(5.0)

    clock.advance(5.0)
    assert await breaker.call("svc", counter.ok) == "ok"
    assert counter.calls == 4
    assert await breaker.status("svc") == CircuitState.HALF_OPEN
    assert listener.transitions[-1] == (CircuitState.OPEN, CircuitState.HALF_OPEN)

    assert await breaker.call("svc", counter.ok) == "ok"
    assert await breaker.status("svc") == CircuitState.HALF_OPEN
    assert await breaker.call("svc", counter.ok) == "ok"
    assert await breaker.status("svc") == CircuitState.CLOSED
    assert listener.transitions[-1] == (CircuitState.HALF_OPEN, CircuitState.CLOSED)

    snapshot = await breaker.snapshot("svc")
    assert snapshot.previous_status == CircuitState.HALF_OPEN
    assert snapshot.failure_count == 0
    assert snapshot.total_count == 0


async def test_failure_ratio_must_also_be_reached(clock: FakeClock) -> None:
    breaker = _breaker(clock, failure_ratio=0.5)
    counter = _Counter()

    for _ in range(4):
        await breaker.call("svc", counter.ok)
    for _ in range(3):
        with pytest.raises(RuntimeError):
            await breaker.call("svc", counter.fail)
    assert await breaker.status("svc") == CircuitState.CLOSED

    with pytest.raises(RuntimeError):
        await breaker.call("svc", counter.fail)
    assert await breaker.status("svc") == CircuitState.OPEN


async def test_sampling_window_expiry_resets_counters_before_counting(
    clock: FakeClock,
) -> None:
    breaker = _breaker(clock)
    counter = _Counter()

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.call("svc", counter.fail)

    clock.advance(10.0)
    with pytest.raises(RuntimeError):
        await breaker.call("svc", counter.fail)

    snapshot = await breaker.snapshot("svc")
    assert snapshot.status == CircuitState.CLOSED
    assert snapshot.failure_count == 1
    assert snapshot.total_count == 1
    assert snapshot.reset_at is not None
    assert (snapshot.reset_at - clock.now()).total_seconds() == pytest.approx(10.0)


async def test_half_open_failure_reopens_and_discards_progress(
    clock: FakeClock, listener: RecordingListener
) -> None:
    breaker = _breaker(clock, listener=listener)
    counter = _Counter()
    for _ in range(3):
        with pytest.raises(RuntimeError):
            await breaker.call("svc", counter.fail)

    clock.advance(5.0)
    await breaker.call("svc", counter.ok)
    await breaker.call("svc", counter.ok)
    with pytest.raises(RuntimeError):
        await breaker.call("svc", counter.fail)

    assert await breaker.status("svc") == CircuitState.OPEN
    assert await breaker.reset_in("svc") == pytest.approx(5.0)
    assert listener.transitions[-1] == (CircuitState.HALF_OPEN, CircuitState.OPEN)

    clock.advance(5.0)
    await breaker.call("svc", counter.ok)
    snapshot = await breaker.snapshot("svc")
    assert snapshot.status == CircuitState.HALF_OPEN
    assert snapshot.success_count == 1


async def test_reset_in_decreases_while_open(clock: FakeClock) -> None:
    breaker = _breaker(clock)
    await breaker.trip("svc")

    first = await breaker.reset_in("svc")
    clock.advance(2.0)
    second = await breaker.reset_in("svc")
    clock.advance(10.0)
    third = await breaker.reset_in("svc")

    assert first == pytest.approx(5.0)
    assert second == pytest.approx(3.0)
    assert third == 0.0
    assert await breaker.status("svc") == CircuitState.OPEN


async def test_isolated_rejects_regardless_of_time_until_reset(
    clock: FakeClock, listener: RecordingListener
) -> None:
    breaker = _breaker(clock, listener=listener)
    counter = _Counter()

    await breaker.isolate("svc")
    for _ in range(3):
        with pytest.raises(CircuitIsolatedError):
            await breaker.call("svc", counter.ok)
        clock.advance(1_000.0)

    assert counter.calls == 0
    assert await breaker.status("svc") == CircuitState.ISOLATED
    assert await breaker.reset_in("svc") == 0.0
    assert ("rejected", ("svc", CircuitState.ISOLATED)) in listener.events

    await breaker.reset("svc")
    assert await breaker.call("svc", counter.ok) == "ok"
    assert listener.transitions == [
        (CircuitState.CLOSED, CircuitState.ISOLATED),
        (CircuitState.ISOLATED, CircuitState.CLOSED),
    ]


async def test_keys_are_tracked_independently(clock: FakeClock) -> None:
    breaker = _breaker(clock)
    counter = _Counter()

    for _ in range(3):
        with pytest.raises(RuntimeError):
            await breaker.call("db", counter.fail)

    assert await breaker.status("db") == CircuitState.OPEN
    assert await breaker.call("api", counter.ok) == "ok"
    assert await breaker.status("api") == CircuitState.CLOSED


async def test_read_failure_skips_call(clock: FakeClock) -> None:
    storage = _FlakyStorage()
    storage.fail_get = True
    breaker = _breaker(clock, storage=storage)
    counter = _Counter()

    with pytest.raises(BreakerStoreError) as excinfo:
        await breaker.call("svc", counter.ok)

    assert excinfo.value.operation == "get"
    assert counter.calls == 0


async def test_backend_exception_is_wrapped_as_store_error(clock: FakeClock) -> None:
    breaker = _breaker(clock, storage=_BrokenBackendStorage())

    with pytest.raises(BreakerStoreError) as excinfo:
        await breaker.status("svc")

    assert isinstance(excinfo.value.__cause__, OSError)


async def test_write_failure_after_success_raises_store_error(
    clock: FakeClock,
) -> None:
    storage = _FlakyStorage()
    storage.fail_set = True
    breaker = _breaker(clock, storage=storage)
    counter = _Counter()

    with pytest.raises(BreakerStoreError) as excinfo:
        await breaker.call("svc", counter.ok)

    assert excinfo.value.operation == "set"
    assert counter.calls == 1


async def test_write_failure_after_call_failure_surfaces_both(
    clock: FakeClock,
) -> None:
    storage = _FlakyStorage()
    storage.fail_set = True
    breaker = _breaker(clock, storage=storage)
    counter = _Counter()

    with pytest.raises(ExceptionGroup) as excinfo:
        await breaker.call("svc", counter.fail)

    call_error, store_error = excinfo.value.exceptions
    assert isinstance(call_error, RuntimeError)
    assert isinstance(store_error, BreakerStoreError)


async def test_excluded_exceptions_count_towards_total_only(
    clock: FakeClock,
) -> None:
    class _NotFound(Exception):
        pass

    breaker = _breaker(clock, excluded_exceptions=(_NotFound,))

    async def _missing() -> None:
        raise _NotFound("404")

    for _ in range(5):
        with pytest.raises(_NotFound):
            await breaker.call("svc", _missing)

    snapshot = await breaker.snapshot("svc")
    assert snapshot.status == CircuitState.CLOSED
    assert snapshot.failure_count == 0
    assert snapshot.total_count == 5


async def test_custom_classifier_decides_failures(clock: FakeClock) -> None:
    class _HttpError(Exception):
        def __init__(self, status: int) -> None:
            super().__init__(status)
            self.status = status

    breaker = _breaker(
        clock,
        is_failure=lambda exc: isinstance(exc, _HttpError) and exc.status >= 500,
    )

    async def _respond(status: int) -> None:
        raise _HttpError(status)

    for _ in range(3):
        with pytest.raises(_HttpError):
            await breaker.call("svc", _respond, 404)
    assert await breaker.status("svc") == CircuitState.CLOSED

    for _ in range(3):
        with pytest.raises(_HttpError):
            await breaker.call("svc", _respond, 503)
    assert await breaker.status("svc") == CircuitState.OPEN


async def test_calls_on_same_key_serialize(clock: FakeClock) -> None:
    breaker = _breaker(clock)
    order: list[str] = []
    started = asyncio.Event()
    release = asyncio.Event()

    async def _slow() -> str:
        order.append("slow:start")
        started.set()
        await release.wait()
        order.append("slow:end")
        return "slow"

    async def _fast() -> str:
        order.append("fast")
        return "fast"

    slow_task = asyncio.create_task(breaker.call("svc", _slow))
    await started.wait()
    fast_task = asyncio.create_task(breaker.call("svc", _fast))
    other_key = await breaker.call("other", _fast)
    release.set()

    assert await slow_task == "slow"
    assert await fast_task == "fast"
    assert other_key == "fast"
    assert order == ["slow:start", "fast", "slow:end", "fast"]
    snapshot = await breaker.snapshot("svc")
    assert snapshot.total_count == 2


async def test_admin_overwrite_retries_stale_writes(
    clock: FakeClock, listener: RecordingListener
) -> None:
    storage = _FlakyStorage()
    storage.stale_writes = 2
    breaker = CircuitBreaker(
        CircuitBreakerConfig(),
        storage=storage,
        listeners=[listener],
        clock=clock,
        conflict_policy=RetryBackoffPolicy(
            attempts=3, min_seconds=0.0, max_seconds=0.0, jitter_seconds=0.0
        ),
    )

    stored = await breaker.trip("svc")

    assert stored.status == CircuitState.OPEN
    assert stored.version == 1
    assert listener.transitions == [(CircuitState.CLOSED, CircuitState.OPEN)]


async def test_admin_overwrite_gives_up_after_policy_attempts(
    clock: FakeClock,
) -> None:
    storage = _FlakyStorage()
    storage.stale_writes = 5
    breaker = CircuitBreaker(
        storage=storage,
        clock=clock,
        conflict_policy=RetryBackoffPolicy(
            attempts=2, min_seconds=0.0, max_seconds=0.0, jitter_seconds=0.0
        ),
    )

    with pytest.raises(StaleStateError):
        await breaker.isolate("svc")


async def test_admin_overwrite_logs_each_conflict_retry(
    monkeypatch: pytest.MonkeyPatch, clock: FakeClock, fake_logger: FakeLogger
) -> None:
    monkeypatch.setattr(breaker_module, "_logger", fake_logger)
    storage = _FlakyStorage()
    storage.stale_writes = 2
    breaker = CircuitBreaker(
        storage=storage,
        clock=clock,
        conflict_policy=RetryBackoffPolicy(
            attempts=3, min_seconds=0.0, max_seconds=0.0, jitter_seconds=0.0
        ),
    )

    await breaker.isolate("svc")

    conflicts = [
        (level, fields)
        for level, event, fields in fake_logger.calls
        if event == "circuit_breaker_overwrite_conflict"
    ]
    assert [level for level, _ in conflicts] == ["warning", "warning"]
    assert [fields["attempt"] for _, fields in conflicts] == [1, 2]
    assert conflicts[0][1]["target_state"] == "isolated"


async def test_cancelled_call_keeps_transition_taken_before_it(
    clock: FakeClock, listener: RecordingListener
) -> None:
    breaker = _breaker(clock, listener=listener)
    await breaker.trip("svc")
    clock.advance(5.0)

    async def _cancelled() -> None:
        raise asyncio.CancelledError

    with pytest.raises(asyncio.CancelledError):
        await breaker.call("svc", _cancelled)
    assert await breaker.status("svc") == CircuitState.HALF_OPEN

    counter = _Counter()
    assert await breaker.call("svc", counter.ok) == "ok"
    assert listener.transitions == [
        (CircuitState.CLOSED, CircuitState.OPEN),
        (CircuitState.OPEN, CircuitState.HALF_OPEN),
    ]
    snapshot = await breaker.snapshot("svc")
    assert snapshot.success_count == 1


async def test_listener_exceptions_are_logged_and_swallowed(
    clock: FakeClock, listener: RecordingListener
) -> None:
    class _ExplodingListener:
        async def on_state_change(self, key, old, new) -> None:
            raise RuntimeError("boom")

        async def on_call_rejected(self, key, state) -> None:
            raise RuntimeError("boom")

        async def on_call_succeeded(self, key, elapsed) -> None:
            raise RuntimeError("boom")

        async def on_call_failed(self, key, exc, elapsed) -> None:
            raise RuntimeError("boom")

    breaker = CircuitBreaker(
        CircuitBreakerConfig(failure_threshold=1, failure_ratio=0.5),
        listeners=[_ExplodingListener(), listener],
        clock=clock,
    )
    counter = _Counter()

    assert await breaker.call("svc", counter.ok) == "ok"
    with pytest.raises(RuntimeError, match="nope"):
        await breaker.call("svc", counter.fail)
    with pytest.raises(CircuitOpenError):
        await breaker.call("svc", counter.ok)

    assert listener.events == [
        ("succeeded", "svc"),
        ("state", ("svc", CircuitState.CLOSED, CircuitState.OPEN)),
        ("failed", ("svc", "RuntimeError")),
        ("rejected", ("svc", CircuitState.OPEN)),
    ]


async def test_config_rejects_invalid_values() -> None:
    with pytest.raises(ValueError, match="success_threshold"):
        CircuitBreakerConfig(success_threshold=0)
    with pytest.raises(ValueError, match="failure_threshold"):
        CircuitBreakerConfig(failure_threshold=0)
    with pytest.raises(ValueError, match="break_duration"):
        CircuitBreakerConfig(break_duration=-1.0)
    with pytest.raises(ValueError, match="sampling_duration"):
        CircuitBreakerConfig(sampling_duration=0.0)
    with pytest.raises(ValueError, match="failure_ratio"):
        CircuitBreakerConfig(failure_ratio=1.5)
