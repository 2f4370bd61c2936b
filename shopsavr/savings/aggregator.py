"""
Savings Aggregator: backend ingestion of event batches and dashboard reads.

Each event in a batch gets its own verdict and its own transaction; a bad or
failed event never affects its neighbours.  Ingests for the same user are
serialized so the read-check-fold sequence stays consistent, while different
users proceed in parallel.
"""

from __future__ import annotations

import sqlite3
import threading
from collections import defaultdict
from typing import Any
from weakref import WeakValueDictionary

from pydantic import ValidationError

from shopsavr.infrastructure.fingerprint import normalize_store_id
from shopsavr.observability.logging import get_logger
from shopsavr.observability.telemetry import counter, log_event, time_block
from shopsavr.savings.models import (
    CommittedEvent,
    PerEventOutcome,
    PerEventResult,
    SavingsEventIn,
    SavingsHistory,
    UserAggregate,
)
from shopsavr.savings.repository import SavingsRepository

logger = get_logger(__name__)


def _validation_reason(exc: ValidationError) -> str:
    fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()} - {""})
    return f"invalid fields: {', '.join(fields)}" if fields else "invalid event"


class _UserLock:
    """Mutex for one user's writes. Plain object so the lock map can hold it weakly."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> _UserLock:
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._lock.release()


class SavingsAggregator:
    """Folds committed savings events into per-user aggregates."""

    def __init__(self, repository: type[SavingsRepository] = SavingsRepository) -> None:
        self._repository = repository
        # An entry lives only while some request holds its lock
        self._locks: WeakValueDictionary[str, _UserLock] = WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> _UserLock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = _UserLock()
                self._locks[user_id] = lock
            return lock

    def ingest(self, events: list[dict[str, Any]], user_id: str) -> list[PerEventResult]:
        """
        Apply a batch of raw wire events for one user.

        Args:
            events: Event payloads as received (camelCase keys)
            user_id: Authenticated owner of the batch

        Returns:
            One PerEventResult per input, in input order
        """
        results: list[PerEventResult] = []

        with self._user_lock(user_id), time_block("ingest.batch"):
            for raw in events:
                results.append(self._ingest_one(raw, user_id))

        outcomes = defaultdict(int)
        for result in results:
            outcomes[result.outcome.value] += 1
        log_event("ingest.batch", user_id=user_id, size=len(events), **outcomes)
        return results

    def _ingest_one(self, raw: Any, user_id: str) -> PerEventResult:
        fingerprint = raw.get("fingerprint") if isinstance(raw, dict) else None
        fingerprint = fingerprint if isinstance(fingerprint, str) else ""

        try:
            event = SavingsEventIn.model_validate(raw)
        except ValidationError as e:
            counter("ingest.rejected")
            return PerEventResult(
                fingerprint=fingerprint,
                outcome=PerEventOutcome.REJECTED,
                reason=_validation_reason(e),
            )

        try:
            outcome = self._repository.apply_event(event, user_id)
        except (sqlite3.Error, OverflowError, RuntimeError, FileNotFoundError) as e:
            logger.error("Failed to commit savings event %s: %s", event.fingerprint[:12], e)
            counter("ingest.unavailable")
            return PerEventResult(
                fingerprint=event.fingerprint,
                outcome=PerEventOutcome.UNAVAILABLE,
                reason="storage unavailable",
            )

        reason = None
        if outcome is PerEventOutcome.COMMITTED:
            counter("ingest.committed")
        elif outcome is PerEventOutcome.ALREADY_COMMITTED:
            counter("ingest.already_committed")
        else:
            counter("ingest.rejected")
            reason = "fingerprint belongs to another user"

        return PerEventResult(fingerprint=event.fingerprint, outcome=outcome, reason=reason)

    def amend_amount(
        self, user_id: str, fingerprint: str, amount_saved: float
    ) -> CommittedEvent | None:
        with self._user_lock(user_id):
            return self._repository.amend_amount(user_id, fingerprint, amount_saved)

    def get_aggregate(self, user_id: str) -> UserAggregate:
        return self._repository.get_aggregate(user_id)

    def history(
        self,
        user_id: str,
        store_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
        date_from: int | None = None,
        date_to: int | None = None,
    ) -> SavingsHistory:
        if store_id:
            store_id = normalize_store_id(store_id)
        events, total = self._repository.list_events(
            user_id,
            store_id=store_id,
            limit=limit,
            offset=offset,
            date_from=date_from,
            date_to=date_to,
        )
        return SavingsHistory(events=events, total=total, limit=limit, offset=offset)

    def recompute(self, user_id: str) -> UserAggregate:
        with self._user_lock(user_id):
            return self._repository.recompute_aggregate(user_id)
