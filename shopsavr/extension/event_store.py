"""
Local Event Store: the extension's durable queue of savings events.

Backed by its own SQLite file so queued events survive the background
process being killed.  Rows are keyed by fingerprint; every state transition
is one transaction under one lock.

State machine per row::

    PENDING ──next_batch──▶ IN_FLIGHT ──mark_committed──▶ COMMITTED ──purge──▶ (gone)
       ▲                      │   │
       │◀──release / stale────┘   └──mark_failed──▶ FAILED(attempts) ──backoff──▶ eligible
       │                                              │
       └──────────────────────────────────────────────┘
                                 attempts >= max_attempts ──▶ DEAD_LETTERED
"""

from __future__ import annotations

import sqlite3
import threading
import time
import uuid
from collections.abc import Callable, Generator, Iterable
from contextlib import contextmanager
from pathlib import Path

from shopsavr.config import (
    LOCAL_RETENTION_SECONDS,
    LOCAL_STORE_PATH,
    SYNC_INFLIGHT_STALE_SECONDS,
    SYNC_MAX_ATTEMPTS,
)
from shopsavr.extension.models import EnqueueResult, SavingsEvent, SyncState
from shopsavr.infrastructure.retry import BackoffPolicy
from shopsavr.observability.logging import get_logger
from shopsavr.observability.telemetry import counter, log_event

logger = get_logger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS local_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        fingerprint TEXT NOT NULL UNIQUE,
        coupon_id TEXT NOT NULL,
        code TEXT NOT NULL,
        store_id TEXT NOT NULL,
        captured_at INTEGER NOT NULL,
        amount_saved REAL,
        sync_state TEXT NOT NULL DEFAULT 'PENDING',
        attempts INTEGER NOT NULL DEFAULT 0,
        next_retry_at REAL,
        in_flight_since REAL,
        last_error TEXT,
        committed_at REAL,
        created_at REAL NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_local_events_state_captured
    ON local_events(sync_state, captured_at);

    CREATE TABLE IF NOT EXISTS store_meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );
"""

# States a commit/failure verdict may act on. COMMITTED and DEAD_LETTERED are final.
_OPEN_STATES = (SyncState.PENDING.value, SyncState.IN_FLIGHT.value, SyncState.FAILED.value)


def _placeholders(values: list[str]) -> str:
    return ",".join("?" * len(values))


class LocalEventStore:
    """Append-only durable queue of savings events.

    Args:
        path: SQLite file (":memory:" for throwaway stores)
        max_attempts: failures before an event is dead-lettered
        stale_after: seconds an IN_FLIGHT row may wait for a verdict
        retention_seconds: how long COMMITTED rows are kept before purge
        backoff: delay policy for FAILED rows
        clock: returns epoch seconds; injectable for tests
    """

    def __init__(
        self,
        path: str | Path = LOCAL_STORE_PATH,
        *,
        max_attempts: int = SYNC_MAX_ATTEMPTS,
        stale_after: float = SYNC_INFLIGHT_STALE_SECONDS,
        retention_seconds: float = LOCAL_RETENTION_SECONDS,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.path = str(path)
        self.max_attempts = max_attempts
        self.stale_after = stale_after
        self.retention_seconds = retention_seconds
        self.backoff = backoff or BackoffPolicy(stage="local_store")
        self._clock = clock
        self._lock = threading.Lock()

        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        # FULL: an acknowledged enqueue must survive power loss, not just a crash
        self._conn.execute("PRAGMA synchronous=FULL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

        self.client_instance_id = self._load_client_instance_id()

        recovered = self.reclaim_stale()
        if recovered:
            logger.info("Recovered %d abandoned in-flight events on open", recovered)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Generator[sqlite3.Connection, None, None]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _load_client_instance_id(self) -> str:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT value FROM store_meta WHERE key = 'client_instance_id'"
            ).fetchone()
            if row:
                return row["value"]
            instance_id = uuid.uuid4().hex
            conn.execute(
                "INSERT INTO store_meta (key, value) VALUES ('client_instance_id', ?)",
                (instance_id,),
            )
        logger.info("Generated client instance id for %s", self.path)
        return instance_id

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def enqueue(self, event: SavingsEvent) -> EnqueueResult:
        """Persist ``event`` as PENDING unless its fingerprint is already stored."""
        now = self._clock()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO local_events (
                    fingerprint, coupon_id, code, store_id, captured_at,
                    amount_saved, sync_state, attempts, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    event.fingerprint,
                    event.coupon_id,
                    event.code,
                    event.store_id,
                    event.captured_at,
                    event.amount_saved,
                    SyncState.PENDING.value,
                    now,
                ),
            )
            inserted = cursor.rowcount > 0

        if not inserted:
            return EnqueueResult.DUPLICATE
        logger.debug("Enqueued %s (%s at %s)", event.fingerprint[:12], event.code, event.store_id)
        return EnqueueResult.ACCEPTED

    def _reclaim_stale(self, conn: sqlite3.Connection, now: float) -> int:
        cursor = conn.execute(
            """
            UPDATE local_events
            SET sync_state = ?, in_flight_since = NULL
            WHERE sync_state = ? AND in_flight_since <= ?
            """,
            (SyncState.PENDING.value, SyncState.IN_FLIGHT.value, now - self.stale_after),
        )
        return cursor.rowcount

    def reclaim_stale(self) -> int:
        """Return abandoned IN_FLIGHT rows (no verdict within stale_after) to PENDING."""
        with self._transaction() as conn:
            reclaimed = self._reclaim_stale(conn, self._clock())
        if reclaimed:
            counter("store.stale_reclaimed", reclaimed)
            log_event("store.stale_reclaimed", count=reclaimed)
        return reclaimed

    def next_batch(self, max_size: int) -> list[SavingsEvent]:
        """
        Claim up to ``max_size`` eligible events, oldest capturedAt first.

        Eligible: PENDING, or FAILED whose backoff has elapsed. Stale
        IN_FLIGHT rows are reclaimed first so they compete fairly.

        Side Effects:
            - Marks returned rows IN_FLIGHT with in_flight_since = now
        """
        if max_size < 1:
            raise ValueError("max_size must be >= 1")

        now = self._clock()
        with self._transaction() as conn:
            reclaimed = self._reclaim_stale(conn, now)
            rows = conn.execute(
                """
                SELECT * FROM local_events
                WHERE sync_state = ?
                   OR (sync_state = ? AND (next_retry_at IS NULL OR next_retry_at <= ?))
                ORDER BY captured_at ASC, seq ASC
                LIMIT ?
                """,
                (SyncState.PENDING.value, SyncState.FAILED.value, now, max_size),
            ).fetchall()

            fingerprints = [row["fingerprint"] for row in rows]
            if fingerprints:
                conn.execute(
                    f"""
                    UPDATE local_events
                    SET sync_state = ?, in_flight_since = ?
                    WHERE fingerprint IN ({_placeholders(fingerprints)})
                    """,
                    (SyncState.IN_FLIGHT.value, now, *fingerprints),
                )

        if reclaimed:
            counter("store.stale_reclaimed", reclaimed)
            log_event("store.stale_reclaimed", count=reclaimed)

        batch = []
        for row in rows:
            event = SavingsEvent.from_db_row(dict(row))
            event.sync_state = SyncState.IN_FLIGHT
            event.in_flight_since = now
            batch.append(event)
        return batch

    def mark_committed(self, fingerprints: Iterable[str]) -> int:
        """Backend acknowledged these events. Returns rows updated."""
        fps = list(fingerprints)
        if not fps:
            return 0
        now = self._clock()
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE local_events
                SET sync_state = ?, committed_at = ?, in_flight_since = NULL,
                    next_retry_at = NULL, last_error = NULL
                WHERE fingerprint IN ({_placeholders(fps)})
                  AND sync_state IN ({_placeholders(list(_OPEN_STATES))})
                """,
                (SyncState.COMMITTED.value, now, *fps, *_OPEN_STATES),
            )
            return cursor.rowcount

    def mark_failed(self, fingerprints: Iterable[str], error: str | None = None) -> list[str]:
        """
        Count a failed attempt for each event.

        Returns the fingerprints that crossed max_attempts and were dead-lettered.
        """
        fps = list(fingerprints)
        if not fps:
            return []
        now = self._clock()
        dead: list[str] = []

        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT fingerprint, attempts FROM local_events
                WHERE fingerprint IN ({_placeholders(fps)})
                  AND sync_state IN ({_placeholders(list(_OPEN_STATES))})
                """,
                (*fps, *_OPEN_STATES),
            ).fetchall()

            for row in rows:
                attempts = row["attempts"] + 1
                if attempts >= self.max_attempts:
                    conn.execute(
                        """
                        UPDATE local_events
                        SET sync_state = ?, attempts = ?, last_error = ?,
                            in_flight_since = NULL, next_retry_at = NULL
                        WHERE fingerprint = ?
                        """,
                        (SyncState.DEAD_LETTERED.value, attempts, error, row["fingerprint"]),
                    )
                    dead.append(row["fingerprint"])
                else:
                    conn.execute(
                        """
                        UPDATE local_events
                        SET sync_state = ?, attempts = ?, last_error = ?,
                            in_flight_since = NULL, next_retry_at = ?
                        WHERE fingerprint = ?
                        """,
                        (
                            SyncState.FAILED.value,
                            attempts,
                            error,
                            self.backoff.schedule(attempts, now),
                            row["fingerprint"],
                        ),
                    )

        for fingerprint in dead:
            counter("store.dead_lettered")
            logger.warning(
                "Event %s dead-lettered after %d attempts: %s",
                fingerprint[:12],
                self.max_attempts,
                error,
            )
        return dead

    def release(self, fingerprints: Iterable[str]) -> int:
        """Outcome unknown: IN_FLIGHT → PENDING without an attempt penalty."""
        fps = list(fingerprints)
        if not fps:
            return 0
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE local_events
                SET sync_state = ?, in_flight_since = NULL
                WHERE fingerprint IN ({_placeholders(fps)}) AND sync_state = ?
                """,
                (SyncState.PENDING.value, *fps, SyncState.IN_FLIGHT.value),
            )
            return cursor.rowcount

    def purge_committed(self, retention_seconds: float | None = None) -> int:
        """Garbage-collect COMMITTED rows older than the retention window."""
        retention = self.retention_seconds if retention_seconds is None else retention_seconds
        cutoff = self._clock() - retention
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM local_events WHERE sync_state = ? AND committed_at <= ?",
                (SyncState.COMMITTED.value, cutoff),
            )
            purged = cursor.rowcount
        if purged:
            logger.info("Purged %d committed events past retention", purged)
        return purged

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, fingerprint: str) -> SavingsEvent | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM local_events WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()
        return SavingsEvent.from_db_row(dict(row)) if row else None

    def has_pending(self) -> bool:
        """True if next_batch would return something right now."""
        now = self._clock()
        with self._lock:
            row = self._conn.execute(
                """
                SELECT 1 FROM local_events
                WHERE sync_state = ?
                   OR (sync_state = ? AND (next_retry_at IS NULL OR next_retry_at <= ?))
                   OR (sync_state = ? AND in_flight_since <= ?)
                LIMIT 1
                """,
                (
                    SyncState.PENDING.value,
                    SyncState.FAILED.value,
                    now,
                    SyncState.IN_FLIGHT.value,
                    now - self.stale_after,
                ),
            ).fetchone()
        return row is not None

    def count_by_state(self) -> dict[str, int]:
        counts = {state.value: 0 for state in SyncState}
        with self._lock:
            rows = self._conn.execute(
                "SELECT sync_state, COUNT(*) AS count FROM local_events GROUP BY sync_state"
            ).fetchall()
        for row in rows:
            counts[row["sync_state"]] = row["count"]
        return counts

    def dead_letters(self, limit: int = 100) -> list[SavingsEvent]:
        """Dead-lettered events, oldest first, for diagnostics."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM local_events WHERE sync_state = ?
                ORDER BY captured_at ASC, seq ASC LIMIT ?
                """,
                (SyncState.DEAD_LETTERED.value, limit),
            ).fetchall()
        return [SavingsEvent.from_db_row(dict(row)) for row in rows]
