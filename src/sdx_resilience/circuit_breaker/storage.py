"""State storage for circuit breakers.

Storage is intentionally decoupled from breaker logic. Two backends ship with
the package:
  - ``InMemoryBreakerStorage`` keeps records in process memory and hands the
    breaker one ``asyncio.Lock`` per key, so concurrent calls on the same key
    serialize while different keys proceed independently.
  - ``SharedBreakerStorage`` keeps JSON-encoded records in any async key-value
    client (for example Redis) for multi-process coordination. It takes no
    lock: the read and the write of one breaker call are not atomic, so
    concurrent processes may overwrite each other's counters. Writes are still
    version-checked, which rejects most lost updates but not all of them.

Every write compares the record's ``version`` with the stored one and raises
``StaleStateError`` on mismatch. The persisted record carries the next version.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Protocol

from pydantic import TypeAdapter, ValidationError

from sdx_resilience.circuit_breaker.exceptions import (
    BreakerStoreError,
    StaleStateError,
)
from sdx_resilience.circuit_breaker.state import BreakerState

_RECORD_ADAPTER: TypeAdapter[BreakerState] = TypeAdapter(BreakerState)


class AbstractBreakerStorage(ABC):
    """Abstract breaker storage interface."""

    @abstractmethod
    async def get(self, key: str) -> BreakerState | None:
        """Return a copy of the record for ``key``, or ``None`` if missing.

        Raises:
            BreakerStoreError: When the backend cannot be read.
        """

    @abstractmethod
    async def set(self, key: str, record: BreakerState) -> BreakerState:
        """Persist ``record`` for ``key`` and return the stored copy.

        Raises:
            StaleStateError: When ``record.version`` differs from the stored
                version (``0`` for a missing key).
            BreakerStoreError: When the backend cannot be written.
        """

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        """Hold ``key`` for one breaker call. No-op unless overridden."""
        yield


class InMemoryBreakerStorage(AbstractBreakerStorage):
    """In-memory storage with one cooperative lock per breaker key.

    Records and locks are kept for every key ever seen and never evicted, so
    breaker keys should come from a bounded set (dependency names, not
    request ids).
    """

    def __init__(self) -> None:
        """Initialize in-memory record and lock registries."""
        self._records: dict[str, BreakerState] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        """Serialize breaker calls on ``key`` within this event loop."""
        async with self._locks[key]:
            yield

    async def get(self, key: str) -> BreakerState | None:
        """Return a copy of the stored record, if any."""
        record = self._records.get(key)
        if record is None:
            return None
        return replace(record)

    async def set(self, key: str, record: BreakerState) -> BreakerState:
        """Store a copy of ``record`` with its version bumped."""
        current = self._records.get(key)
        stored_version = 0 if current is None else current.version
        if record.version != stored_version:
            raise StaleStateError(key, expected=record.version, actual=stored_version)
        updated = replace(record, version=stored_version + 1)
        self._records[key] = updated
        return replace(updated)


class KeyValueClient(Protocol):
    """Subset of an async key-value client used by ``SharedBreakerStorage``.

    ``redis.asyncio.Redis`` satisfies this protocol as-is.
    """

    async def get(self, key: str) -> str | bytes | None:
        """Return the value stored at ``key``, if any."""

    async def set(self, key: str, value: str) -> object:
        """Store ``value`` at ``key``."""


class SharedBreakerStorage(AbstractBreakerStorage):
    """Storage backed by an external key-value store shared across processes."""

    def __init__(
        self,
        client: KeyValueClient,
        *,
        key_prefix: str = "circuit_breaker:",
    ) -> None:
        """Create a shared storage adapter.

        Args:
            client: Async key-value client holding the records.
            key_prefix: Prefix prepended to every breaker key.
        """
        self._client = client
        self._key_prefix = key_prefix

    def _storage_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def _read(self, key: str) -> BreakerState | None:
        try:
            raw = await self._client.get(self._storage_key(key))
        except Exception as exc:
            raise BreakerStoreError(key, "get", repr(exc)) from exc
        if raw is None:
            return None
        try:
            return _RECORD_ADAPTER.validate_json(raw)
        except ValidationError as exc:
            raise BreakerStoreError(key, "get", "undecodable record") from exc

    async def get(self, key: str) -> BreakerState | None:
        """Fetch and decode the record stored for ``key``."""
        return await self._read(key)

    async def set(self, key: str, record: BreakerState) -> BreakerState:
        """Version-check against the stored record, then overwrite it."""
        current = await self._read(key)
        stored_version = 0 if current is None else current.version
        if record.version != stored_version:
            raise StaleStateError(key, expected=record.version, actual=stored_version)

        updated = replace(record, version=stored_version + 1)
        payload = _RECORD_ADAPTER.dump_json(updated).decode()
        try:
            await self._client.set(self._storage_key(key), payload)
        except Exception as exc:
            raise BreakerStoreError(key, "set", repr(exc)) from exc
        return updated
