"""Framework-agnostic async circuit breaker with keyed, pluggable state.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - One ``CircuitBreaker`` guards many dependencies; each breaker key has its
    own persisted ``BreakerState`` record.
  - ``CLOSED`` trips to ``OPEN`` when, within one sampling window, both
    ``failure_count >= failure_threshold`` and
    ``failure_count / total_count >= failure_ratio`` hold. The check runs after
    every call, so the call reaching the threshold trips the breaker.
  - After ``break_duration`` the next call moves ``OPEN`` to ``HALF_OPEN`` and
    is attempted as a probe. Any failed probe reopens the circuit;
    ``success_threshold`` successful probes close it.
  - ``ISOLATED`` is entered and left only through ``isolate`` and ``reset``.
  - Store read failures fail closed: the guarded call is not attempted.
"""

from sdx_resilience.circuit_breaker.breaker import CircuitBreaker
from sdx_resilience.circuit_breaker.clock import Clock, SystemClock
from sdx_resilience.circuit_breaker.config import (
    CircuitBreakerConfig,
    FailureClassifier,
)
from sdx_resilience.circuit_breaker.exceptions import (
    BreakerStoreError,
    CircuitBreakerError,
    CircuitIsolatedError,
    CircuitOpenError,
    StaleStateError,
)
from sdx_resilience.circuit_breaker.metrics import (
    BreakerListener,
    LoggingBreakerListener,
)
from sdx_resilience.circuit_breaker.state import BreakerState, CircuitState
from sdx_resilience.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
    KeyValueClient,
    SharedBreakerStorage,
)

__all__ = [
    "AbstractBreakerStorage",
    "BreakerListener",
    "BreakerState",
    "BreakerStoreError",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitIsolatedError",
    "CircuitOpenError",
    "CircuitState",
    "Clock",
    "FailureClassifier",
    "InMemoryBreakerStorage",
    "KeyValueClient",
    "LoggingBreakerListener",
    "SharedBreakerStorage",
    "StaleStateError",
    "SystemClock",
]
