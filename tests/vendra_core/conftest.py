from __future__ import annotations

import pytest

import vendra_core.circuit_breaker.breaker as breaker_mod
import vendra_core.circuit_breaker.storage as storage_mod
from tests.vendra_core.support.fakes import FakeClock, FakeLogger, RecordingSleep


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Drive breaker and storage timestamps from one manual clock."""
    clock = FakeClock()
    monkeypatch.setattr(breaker_mod, "_utcnow", clock.now)
    monkeypatch.setattr(storage_mod, "_utcnow", clock.now)
    return clock


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """Provide a retry sleep that records delays and returns immediately."""
    return RecordingSleep()
