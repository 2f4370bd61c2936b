"""
Pytest configuration for the savings pipeline tests

Provides a fake clock, a throwaway local event store, and an isolated backend
database per test.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from shopsavr.extension.event_store import LocalEventStore
from shopsavr.infrastructure.database import init_database, reset_pool
from shopsavr.infrastructure.retry import BackoffPolicy
from shopsavr.observability import telemetry

# 2024-01-01T00:00:00Z
BASE_TIME = 1_704_067_200.0


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = BASE_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture(autouse=True)
def reset_telemetry():
    """Counters are process-global; start every test from zero"""
    telemetry.reset()
    yield
    telemetry.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "extension" / "events.db"


@pytest.fixture
def store(store_path: Path, clock: FakeClock) -> Iterator[LocalEventStore]:
    """Local event store on a temp file: 5 attempts, 1s base backoff, 120s staleness"""
    event_store = LocalEventStore(
        store_path,
        max_attempts=5,
        stale_after=120,
        retention_seconds=3600,
        backoff=BackoffPolicy(stage="test", base_delay=1.0, max_delay=300.0),
        clock=clock,
    )
    yield event_store
    event_store.close()


@pytest.fixture
def backend_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Fresh backend database; the pool is rebuilt against it"""
    db_path = tmp_path / "backend" / "shopsavr.db"
    monkeypatch.setenv("SHOPSAVR_DB_PATH", str(db_path))
    reset_pool()
    init_database()
    yield db_path
    reset_pool()


@pytest.fixture
def coupon_message() -> Callable[..., dict[str, Any]]:
    """Factory for COUPON_APPLIED page messages (camelCase, as posted by capture)"""

    def _make(**overrides: Any) -> dict[str, Any]:
        message: dict[str, Any] = {
            "type": "COUPON_APPLIED",
            "couponId": "coupon-1",
            "code": "SAVE10",
            "storeId": "example.com",
            "capturedAt": int(BASE_TIME * 1000),
            "amountSaved": 5.0,
        }
        message.update(overrides)
        return {k: v for k, v in message.items() if v is not None}

    return _make


@pytest.fixture
def wire_event() -> Callable[..., dict[str, Any]]:
    """Factory for backend ingest events with distinct fingerprints"""

    def _make(fingerprint: str, **overrides: Any) -> dict[str, Any]:
        event: dict[str, Any] = {
            "fingerprint": fingerprint,
            "couponId": f"coupon-{fingerprint}",
            "code": "SAVE10",
            "storeId": "example.com",
            "capturedAt": int(BASE_TIME * 1000),
            "amountSaved": 5.0,
        }
        event.update(overrides)
        return event

    return _make
