"""Unit tests for the local event store

Tests cover:
- Idempotent enqueue by fingerprint
- FIFO claiming by capturedAt and batch-size bounds
- Verdict transitions (commit, fail with backoff, release, dead-letter)
- Staleness reclaim and restart durability
- Retention purge and diagnostics
"""

from __future__ import annotations

import pytest

from shopsavr.extension.event_store import LocalEventStore
from shopsavr.extension.models import EnqueueResult, SavingsEvent, SyncState

T0 = 1_704_067_200_000


def make_event(fingerprint: str, captured_at: int = T0, amount: float | None = 5.0) -> SavingsEvent:
    return SavingsEvent(
        fingerprint=fingerprint,
        coupon_id=f"coupon-{fingerprint}",
        code="SAVE10",
        store_id="example.com",
        captured_at=captured_at,
        amount_saved=amount,
    )


def test_enqueue_is_idempotent(store):
    assert store.enqueue(make_event("fp-1")) is EnqueueResult.ACCEPTED
    assert store.enqueue(make_event("fp-1", amount=99.0)) is EnqueueResult.DUPLICATE

    event = store.get("fp-1")
    assert event.amount_saved == 5.0
    assert store.count_by_state()["PENDING"] == 1


def test_next_batch_is_fifo_by_captured_at(store):
    store.enqueue(make_event("t2", captured_at=T0 + 2))
    store.enqueue(make_event("t1", captured_at=T0 + 1))
    store.enqueue(make_event("t3", captured_at=T0 + 3))

    batch = store.next_batch(2)

    assert [e.fingerprint for e in batch] == ["t1", "t2"]
    assert all(e.sync_state is SyncState.IN_FLIGHT for e in batch)
    assert store.get("t3").sync_state is SyncState.PENDING


def test_next_batch_never_returns_in_flight_twice(store):
    store.enqueue(make_event("fp-1"))

    assert len(store.next_batch(10)) == 1
    assert store.next_batch(10) == []


def test_next_batch_rejects_zero_size(store):
    with pytest.raises(ValueError):
        store.next_batch(0)


def test_empty_store_has_nothing_pending(store):
    assert store.has_pending() is False
    assert store.next_batch(5) == []


def test_mark_committed(store, clock):
    store.enqueue(make_event("fp-1"))
    store.next_batch(1)

    assert store.mark_committed(["fp-1"]) == 1

    event = store.get("fp-1")
    assert event.sync_state is SyncState.COMMITTED
    assert event.committed_at == clock.now
    assert store.has_pending() is False


def test_committed_is_final(store):
    store.enqueue(make_event("fp-1"))
    store.next_batch(1)
    store.mark_committed(["fp-1"])

    assert store.release(["fp-1"]) == 0
    assert store.mark_failed(["fp-1"]) == []
    assert store.get("fp-1").sync_state is SyncState.COMMITTED


def test_mark_failed_counts_attempt_and_backs_off(store, clock):
    store.enqueue(make_event("fp-1"))
    store.next_batch(1)

    dead = store.mark_failed(["fp-1"], error="bad code")

    event = store.get("fp-1")
    assert dead == []
    assert event.sync_state is SyncState.FAILED
    assert event.attempts == 1
    assert event.last_error == "bad code"
    assert event.next_retry_at == clock.now + 1.0

    # not eligible until the backoff elapses
    assert store.next_batch(1) == []
    clock.advance(1.0)
    assert [e.fingerprint for e in store.next_batch(1)] == ["fp-1"]


def test_backoff_doubles_per_attempt(store, clock):
    store.enqueue(make_event("fp-1"))
    delays = []
    for _ in range(3):
        clock.advance(600)
        store.next_batch(1)
        store.mark_failed(["fp-1"])
        delays.append(store.get("fp-1").next_retry_at - clock.now)

    assert delays == [1.0, 2.0, 4.0]


def test_fifth_failure_dead_letters(store, clock):
    store.enqueue(make_event("fp-1"))

    for attempt in range(1, 5):
        clock.advance(600)
        assert len(store.next_batch(1)) == 1
        assert store.mark_failed(["fp-1"], error="rejected") == []
        assert store.get("fp-1").attempts == attempt

    clock.advance(600)
    store.next_batch(1)
    assert store.mark_failed(["fp-1"], error="rejected") == ["fp-1"]

    event = store.get("fp-1")
    assert event.sync_state is SyncState.DEAD_LETTERED
    assert event.attempts == 5

    clock.advance(3600)
    assert store.next_batch(10) == []
    assert [e.fingerprint for e in store.dead_letters()] == ["fp-1"]


def test_release_has_no_penalty(store):
    store.enqueue(make_event("fp-1"))
    store.next_batch(1)

    assert store.release(["fp-1"]) == 1

    event = store.get("fp-1")
    assert event.sync_state is SyncState.PENDING
    assert event.attempts == 0
    assert [e.fingerprint for e in store.next_batch(1)] == ["fp-1"]


def test_release_ignores_rows_not_in_flight(store):
    store.enqueue(make_event("fp-1"))

    assert store.release(["fp-1", "unknown"]) == 0


def test_stale_in_flight_is_reclaimed(store, clock):
    store.enqueue(make_event("fp-1"))
    store.next_batch(1)

    clock.advance(119)
    assert store.next_batch(1) == []
    assert store.has_pending() is False

    clock.advance(1)
    assert store.has_pending() is True
    batch = store.next_batch(1)
    assert [e.fingerprint for e in batch] == ["fp-1"]
    assert store.get("fp-1").attempts == 0


def test_late_commit_after_reclaim_still_lands(store, clock):
    store.enqueue(make_event("fp-1"))
    store.next_batch(1)
    clock.advance(200)
    store.reclaim_stale()

    assert store.get("fp-1").sync_state is SyncState.PENDING
    assert store.mark_committed(["fp-1"]) == 1


def test_events_survive_restart(store_path, clock):
    first = LocalEventStore(store_path, stale_after=120, clock=clock)
    for i in range(3):
        first.enqueue(make_event(f"fp-{i}", captured_at=T0 + i))
    first.next_batch(2)
    instance_id = first.client_instance_id
    first.close()

    clock.advance(121)
    reopened = LocalEventStore(store_path, stale_after=120, clock=clock)
    try:
        assert reopened.client_instance_id == instance_id
        assert reopened.count_by_state()["PENDING"] == 3
        assert [e.fingerprint for e in reopened.next_batch(10)] == ["fp-0", "fp-1", "fp-2"]
    finally:
        reopened.close()


def test_restart_keeps_fresh_in_flight(store_path, clock):
    first = LocalEventStore(store_path, stale_after=120, clock=clock)
    first.enqueue(make_event("fp-1"))
    first.next_batch(1)
    first.close()

    reopened = LocalEventStore(store_path, stale_after=120, clock=clock)
    try:
        assert reopened.get("fp-1").sync_state is SyncState.IN_FLIGHT
    finally:
        reopened.close()


def test_purge_committed_respects_retention(store, clock):
    store.enqueue(make_event("old", captured_at=T0))
    store.enqueue(make_event("pending", captured_at=T0 + 1))
    store.next_batch(1)
    store.mark_committed(["old"])

    clock.advance(3599)
    assert store.purge_committed() == 0

    clock.advance(1)
    assert store.purge_committed() == 1
    assert store.get("old") is None
    assert store.get("pending") is not None


def test_count_by_state_lists_every_state(store):
    counts = store.count_by_state()

    assert set(counts) == {s.value for s in SyncState}
    assert all(v == 0 for v in counts.values())


def test_rejects_invalid_max_attempts(tmp_path):
    with pytest.raises(ValueError):
        LocalEventStore(tmp_path / "x.db", max_attempts=0)
