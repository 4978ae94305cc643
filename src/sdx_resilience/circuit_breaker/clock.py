"""Replaceable time source for circuit breakers."""

from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Time source returning timezone-aware UTC datetimes."""

    def now(self) -> datetime:
        """Return the current time."""


class SystemClock:
    """Wall-clock time source."""

    def now(self) -> datetime:
        return datetime.now(UTC)
