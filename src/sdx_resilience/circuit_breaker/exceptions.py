"""Circuit breaker exceptions.

Callers can distinguish between:
  - A call being rejected because the circuit is open.
  - A call being rejected because the circuit was isolated by an operator.
  - The state store failing to read or write a breaker record.

The guarded callable's own exceptions are never wrapped. When both the
callable and the state write fail in the same call, both are raised together
in an ``ExceptionGroup``.
"""

from sdx_resilience.errors import TransientError


class CircuitBreakerError(Exception):
    """Base exception for the circuit breaker package."""


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is rejected because the circuit is open.

    Attributes:
        key: Breaker key rejecting the call.
        retry_after: Seconds until a half-open probe may be attempted.
    """

    def __init__(self, key: str, retry_after: float) -> None:
        """Initialize a circuit-open exception payload.

        Args:
            key: Breaker key rejecting the call.
            retry_after: Seconds until the next probe window opens.
        """
        self.key = key
        self.retry_after = retry_after
        super().__init__(f"circuit_open: {key} retry_after={retry_after:g}s")


class CircuitIsolatedError(CircuitBreakerError):
    """Raised when a call is rejected because the circuit is isolated."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"circuit_isolated: {key}")


class BreakerStoreError(CircuitBreakerError, TransientError):
    """Raised when the state store cannot read or write a breaker record.

    Attributes:
        key: Breaker key whose record was being accessed.
        operation: ``"get"`` or ``"set"``.
    """

    def __init__(self, key: str, operation: str, detail: str = "") -> None:
        self.key = key
        self.operation = operation
        message = f"circuit_store_{operation}_failed: {key}"
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class StaleStateError(BreakerStoreError):
    """Raised when a write carries a version older than the stored record."""

    def __init__(self, key: str, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(key, "set", f"version={expected} stored_version={actual}")
