"""Shared error types for sdx_resilience."""


class TransientError(RuntimeError):
    """Generic retry-safe transient dependency failure."""
