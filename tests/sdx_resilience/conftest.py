from __future__ import annotations

import pytest

from tests.sdx_resilience.support.fakes import (
    FakeClock,
    FakeKeyValueClient,
    FakeLogger,
    RecordingListener,
)


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def clock() -> FakeClock:
    """Provide a manually advanced clock starting at 2020-01-01 UTC."""
    return FakeClock()


@pytest.fixture
def kv_client() -> FakeKeyValueClient:
    """Provide an empty dict-backed key-value client."""
    return FakeKeyValueClient()


@pytest.fixture
def listener() -> RecordingListener:
    """Provide a listener recording every breaker event."""
    return RecordingListener()
