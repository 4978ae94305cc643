"""Observability hooks for circuit breakers."""

from typing import Protocol

import structlog

from sdx_resilience.circuit_breaker.state import CircuitState
from sdx_resilience.logging import StructuredLogger, log_info, log_warning


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        ``on_state_change`` fires once per transition, including transitions
        forced by ``isolate``, ``trip`` and ``reset``.
    """

    async def on_state_change(
        self, key: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, key: str, state: CircuitState) -> None:
        """Handle call rejection while the circuit is open or isolated."""

    async def on_call_succeeded(self, key: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(self, key: str, exc: Exception, elapsed: float) -> None:
        """Handle failed protected call completion."""


class LoggingBreakerListener(BreakerListener):
    """Listener that writes breaker events to a structured logger."""

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        """Create a logging listener.

        Args:
            logger: Logger receiving events. Defaults to this module's
                structlog logger.
        """
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    async def on_state_change(
        self, key: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Log transitions; entering ``OPEN`` or ``ISOLATED`` is a warning."""
        if new in (CircuitState.OPEN, CircuitState.ISOLATED):
            log_warning(
                self._logger,
                "circuit_breaker_state_changed",
                breaker_key=key,
                old_state=str(old),
                new_state=str(new),
            )
            return
        log_info(
            self._logger,
            "circuit_breaker_state_changed",
            breaker_key=key,
            old_state=str(old),
            new_state=str(new),
        )

    async def on_call_rejected(self, key: str, state: CircuitState) -> None:
        log_info(
            self._logger,
            "circuit_breaker_call_rejected",
            breaker_key=key,
            state=str(state),
        )

    async def on_call_succeeded(self, key: str, elapsed: float) -> None:
        """No-op; successes are too frequent to log."""
        _ = (key, elapsed)

    async def on_call_failed(self, key: str, exc: Exception, elapsed: float) -> None:
        log_info(
            self._logger,
            "circuit_breaker_call_failed",
            breaker_key=key,
            error_type=exc.__class__.__name__,
            elapsed_seconds=round(elapsed, 6),
        )
