"""
Sync Engine: drains the local event store into the backend.

Each run claims batches from the store, sends them, and applies the backend's
verdict event by event (a batch is never atomic):

    COMMITTED / ALREADY_COMMITTED  → mark_committed
    REJECTED                       → mark_failed (attempt counted, backoff)
    UNAVAILABLE / missing          → release (unknown, no penalty)
    TransientSyncFailure           → release the whole batch, cool down

Runs happen on an interval from a daemon thread, or immediately on
trigger() (e.g. network reconnect).  The transport call is made outside the
store lock, so the bus keeps enqueueing while a batch is in flight.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any

from shopsavr.config import (
    SYNC_BATCH_SIZE,
    SYNC_INTERVAL_SECONDS,
    SYNC_MAX_BATCHES_PER_RUN,
)
from shopsavr.errors import BatchRejected, TransientSyncFailure
from shopsavr.extension.event_store import LocalEventStore
from shopsavr.extension.ingestion_client import IngestionTransport
from shopsavr.extension.models import SavingsEvent, SyncReport, SyncState
from shopsavr.infrastructure.retry import BackoffPolicy
from shopsavr.observability.logging import get_logger
from shopsavr.observability.telemetry import counter, log_event, time_block
from shopsavr.savings.models import PerEventOutcome, PerEventResult

logger = get_logger(__name__)


class SyncEngineState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    BACKING_OFF = "backing_off"
    STOPPED = "stopped"


class SyncEngine:
    """Periodic and on-demand uploader for queued savings events.

    Args:
        store: local event store to drain
        transport: backend connection (HttpIngestionClient in production)
        batch_size: max events per request
        interval_seconds: period of scheduled runs
        max_batches_per_run: upper bound on requests per run
        cooldown: backoff applied to scheduled runs after transient failures
        clock: returns epoch seconds; injectable for tests
    """

    def __init__(
        self,
        store: LocalEventStore,
        transport: IngestionTransport,
        *,
        batch_size: int = SYNC_BATCH_SIZE,
        interval_seconds: float = SYNC_INTERVAL_SECONDS,
        max_batches_per_run: int = SYNC_MAX_BATCHES_PER_RUN,
        cooldown: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        self._store = store
        self._transport = transport
        self._batch_size = batch_size
        self._interval = interval_seconds
        self._max_batches = max_batches_per_run
        self._cooldown = cooldown or BackoffPolicy(stage="sync_cooldown")
        self._clock = clock

        self._state = SyncEngineState.IDLE
        self._run_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

        self._consecutive_transient = 0
        self._backoff_until = 0.0
        self._last_report: SyncReport | None = None
        self._last_run_at: float | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background loop (first run happens immediately)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._loop, name="shopsavr-sync", daemon=True)
        self._thread.start()
        logger.info("SyncEngine started (interval=%.0fs, batch_size=%d)", self._interval, self._batch_size)

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._state = SyncEngineState.STOPPED
        logger.info("SyncEngine stopped")

    def trigger(self) -> None:
        """Request an immediate run that ignores the cool-down (e.g. network back online)."""
        self._wake.set()

    def _loop(self) -> None:
        forced = False
        while not self._stopping.is_set():
            try:
                self.run_once(force=forced)
            except Exception:
                logger.exception("Sync run crashed; will retry on next tick")

            forced = self._wake.wait(timeout=self._interval)
            self._wake.clear()

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------

    def run_once(self, force: bool = False) -> SyncReport:
        """Drain eligible events batch by batch. Safe to call from any thread."""
        report = SyncReport()

        if not self._run_lock.acquire(blocking=False):
            report.skipped_reason = "already_running"
            return report

        try:
            now = self._clock()
            self._last_run_at = now

            if not force and now < self._backoff_until:
                self._state = SyncEngineState.BACKING_OFF
                report.skipped_reason = "backing_off"
                return report

            if not self._store.has_pending():
                report.skipped_reason = "nothing_pending"
            else:
                self._state = SyncEngineState.SYNCING
                for _ in range(self._max_batches):
                    batch = self._store.next_batch(self._batch_size)
                    if not batch:
                        break
                    report.batches += 1
                    report.sent += len(batch)
                    if self._send_batch(batch, report):
                        break

            report.purged = self._store.purge_committed()
        finally:
            if self._state is SyncEngineState.SYNCING:
                self._state = (
                    SyncEngineState.BACKING_OFF
                    if self._clock() < self._backoff_until
                    else SyncEngineState.IDLE
                )
            self._last_report = report
            self._run_lock.release()

        if report.batches:
            log_event("sync.run", **report.to_dict())
        return report

    def _send_batch(self, batch: list[SavingsEvent], report: SyncReport) -> bool:
        """Send one batch and reconcile. Returns True if the run should stop."""
        fingerprints = [event.fingerprint for event in batch]
        counter("sync.batches_sent")

        try:
            with time_block("sync.batch"):
                results = self._transport.send(batch)
        except TransientSyncFailure as e:
            report.released += self._store.release(fingerprints)
            report.transient_failure = True
            report.errors.append(str(e))
            self._enter_cooldown()
            counter("sync.transient_failures")
            logger.warning(
                "Backend unavailable, %d events returned to pending: %s", len(batch), e
            )
            return True
        except BatchRejected as e:
            dead = self._store.mark_failed(fingerprints, error=str(e))
            report.rejected += len(batch)
            report.dead_lettered += len(dead)
            report.errors.append(str(e))
            logger.error("Backend rejected whole batch of %d events: %s", len(batch), e)
            return True
        except Exception as e:
            # Transport bug, not a verdict: no attempt penalty
            report.released += self._store.release(fingerprints)
            report.errors.append(str(e))
            logger.exception("Unexpected transport error; batch returned to pending")
            return True

        self._consecutive_transient = 0
        self._backoff_until = 0.0
        return self._reconcile(batch, results, report)

    def _reconcile(
        self,
        batch: list[SavingsEvent],
        results: list[PerEventResult],
        report: SyncReport,
    ) -> bool:
        by_fingerprint: dict[str, PerEventResult] = {}
        for result in results:
            by_fingerprint.setdefault(result.fingerprint, result)

        committed: list[str] = []
        rejected_by_reason: dict[str, list[str]] = defaultdict(list)
        unknown: list[str] = []

        for event in batch:
            result = by_fingerprint.get(event.fingerprint)
            if result is None or result.outcome is PerEventOutcome.UNAVAILABLE:
                unknown.append(event.fingerprint)
            elif result.outcome.acknowledged:
                committed.append(event.fingerprint)
                if result.outcome is PerEventOutcome.COMMITTED:
                    report.committed += 1
                else:
                    report.already_committed += 1
            else:
                rejected_by_reason[result.reason or "rejected by backend"].append(event.fingerprint)
                report.rejected += 1

        self._store.mark_committed(committed)
        for reason, fingerprints in rejected_by_reason.items():
            report.dead_lettered += len(self._store.mark_failed(fingerprints, error=reason))
        if unknown:
            report.released += self._store.release(unknown)
            logger.info("%d events had no verdict; returned to pending", len(unknown))

        return bool(unknown)

    def _enter_cooldown(self) -> None:
        self._consecutive_transient += 1
        delay = self._cooldown.delay_for(self._consecutive_transient)
        self._backoff_until = self._clock() + delay
        self._state = SyncEngineState.BACKING_OFF

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncEngineState:
        return self._state

    @property
    def last_report(self) -> SyncReport | None:
        return self._last_report

    def get_status(self) -> dict[str, Any]:
        """Queue health for the popup; dead letters mean the dashboard undercounts."""
        counts = self._store.count_by_state()
        dead_lettered = counts[SyncState.DEAD_LETTERED.value]
        return {
            "state": self._state.value,
            "queue": counts,
            "dead_lettered": dead_lettered,
            "savings_undercounted": dead_lettered > 0,
            "consecutive_transient_failures": self._consecutive_transient,
            "backoff_until": self._backoff_until or None,
            "last_run_at": self._last_run_at,
            "last_report": self._last_report.to_dict() if self._last_report else None,
        }
