"""Circuit breaker configuration."""

from collections.abc import Callable
from dataclasses import dataclass

FailureClassifier = Callable[[Exception], bool]


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        success_threshold: Consecutive successful probes required while
            ``HALF_OPEN`` before closing.
        failure_threshold: Failures required within one sampling window before
            opening.
        break_duration: Seconds to stay ``OPEN`` before allowing probes.
        sampling_duration: Length in seconds of one ``CLOSED`` sampling window.
        failure_ratio: Minimum ``failures / calls`` within the window, in
            ``[0, 1]``, required before opening.
        expected_exceptions: Exceptions that count as failures.
        excluded_exceptions: Exceptions that must not count as failures.
        is_failure: Optional classifier replacing the exception-type rules.
    """

    success_threshold: int = 5
    failure_threshold: int = 10
    break_duration: float = 5.0
    sampling_duration: float = 10.0
    failure_ratio: float = 0.5
    expected_exceptions: tuple[type[Exception], ...] = (Exception,)
    excluded_exceptions: tuple[type[Exception], ...] = ()
    is_failure: FailureClassifier | None = None

    def __post_init__(self) -> None:
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.break_duration < 0:
            raise ValueError("break_duration must be >= 0")
        if self.sampling_duration <= 0:
            raise ValueError("sampling_duration must be > 0")
        if not 0.0 <= self.failure_ratio <= 1.0:
            raise ValueError("failure_ratio must be within [0, 1]")

    def counts_as_failure(self, exc: Exception) -> bool:
        """Return whether ``exc`` raised by a guarded call is a failure."""
        if self.is_failure is not None:
            return self.is_failure(exc)
        if isinstance(exc, self.excluded_exceptions):
            return False
        return isinstance(exc, self.expected_exceptions)
