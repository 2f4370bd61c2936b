"""
Savings Repository - persistence for committed savings events and aggregates.

Follows the database patterns in shopsavr/infrastructure/database.py: pooled
connections, one db_transaction per logical write, retry_on_db_lock on every
write path.  The aggregate tables are only ever changed inside the same
transaction as the savings_events row that justifies the change.
"""

from __future__ import annotations

import sqlite3
from typing import Any

from shopsavr.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from shopsavr.observability.logging import get_logger
from shopsavr.savings.models import (
    CommittedEvent,
    PerEventOutcome,
    SavingsEventIn,
    StoreStats,
    UserAggregate,
    utc_now,
)

logger = get_logger(__name__)


def _money(value: float | None) -> float:
    return round(value or 0.0, 2)


def _fold(
    conn: sqlite3.Connection,
    user_id: str,
    store_id: str,
    *,
    saved_delta: float,
    count_delta: int,
    captured_at: int | None,
    now: str,
) -> None:
    """Apply a delta to the user's total and per-store rows."""
    conn.execute(
        """
        INSERT INTO user_aggregates (user_id, total_saved, coupons_used_count, last_updated_at)
        VALUES (?, ROUND(?, 2), ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            total_saved = ROUND(total_saved + excluded.total_saved, 2),
            coupons_used_count = coupons_used_count + excluded.coupons_used_count,
            last_updated_at = excluded.last_updated_at
        """,
        (user_id, saved_delta, count_delta, now),
    )
    conn.execute(
        """
        INSERT INTO user_store_aggregates (user_id, store_id, count, saved, last_used_at)
        VALUES (?, ?, ?, ROUND(?, 2), ?)
        ON CONFLICT(user_id, store_id) DO UPDATE SET
            count = count + excluded.count,
            saved = ROUND(saved + excluded.saved, 2),
            last_used_at = COALESCE(
                MAX(last_used_at, excluded.last_used_at), last_used_at, excluded.last_used_at
            )
        """,
        (user_id, store_id, count_delta, saved_delta, captured_at),
    )


class SavingsRepository:
    """
    Repository for committed savings events and their folded aggregates.

    Callers serialize writes per user (see SavingsAggregator); the
    fingerprint primary key is what makes a replayed event a no-op.
    """

    @staticmethod
    @retry_on_db_lock()
    def apply_event(event: SavingsEventIn, user_id: str) -> PerEventOutcome:
        """
        Commit one event and fold it into the user's aggregates.

        Args:
            event: Validated wire event
            user_id: Authenticated owner

        Returns:
            COMMITTED on first sight, ALREADY_COMMITTED on replay for the same
            user, REJECTED if the fingerprint belongs to another user

        Side Effects:
            - Inserts into savings_events and upserts both aggregate tables in
              one transaction
        """
        now = utc_now().isoformat()
        amount = _money(event.amount_saved) if event.amount_saved is not None else None

        with db_transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO savings_events (
                    fingerprint, user_id, coupon_id, code, store_id,
                    captured_at, amount_saved, committed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.fingerprint,
                    user_id,
                    event.coupon_id,
                    event.code,
                    event.store_id,
                    event.captured_at,
                    amount,
                    now,
                ),
            )

            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT user_id FROM savings_events WHERE fingerprint = ?",
                    (event.fingerprint,),
                ).fetchone()
                if row is not None and row["user_id"] != user_id:
                    logger.warning(
                        "Fingerprint %s already committed for another user", event.fingerprint[:12]
                    )
                    return PerEventOutcome.REJECTED
                return PerEventOutcome.ALREADY_COMMITTED

            _fold(
                conn,
                user_id,
                event.store_id,
                saved_delta=amount or 0.0,
                count_delta=1,
                captured_at=event.captured_at,
                now=now,
            )

        return PerEventOutcome.COMMITTED

    @staticmethod
    def get_event(fingerprint: str) -> CommittedEvent | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM savings_events WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()

        if not row:
            return None
        return CommittedEvent.from_db_row(dict(row))

    @staticmethod
    @retry_on_db_lock()
    def amend_amount(user_id: str, fingerprint: str, amount_saved: float) -> CommittedEvent | None:
        """
        Set the amount of a committed event and shift aggregates by the delta.

        Returns:
            Updated event, or None if the user has no event with this fingerprint
        """
        now = utc_now().isoformat()
        new_amount = _money(amount_saved)

        with db_transaction() as conn:
            row = conn.execute(
                "SELECT * FROM savings_events WHERE fingerprint = ? AND user_id = ?",
                (fingerprint, user_id),
            ).fetchone()
            if row is None:
                return None

            delta = new_amount - (row["amount_saved"] or 0.0)
            conn.execute(
                "UPDATE savings_events SET amount_saved = ?, amended_at = ? WHERE fingerprint = ?",
                (new_amount, now, fingerprint),
            )
            _fold(
                conn,
                user_id,
                row["store_id"],
                saved_delta=delta,
                count_delta=0,
                captured_at=None,
                now=now,
            )

            updated = dict(row)
            updated["amount_saved"] = new_amount
            updated["amended_at"] = now

        logger.info("Amended savings event %s (delta %.2f)", fingerprint[:12], delta)
        return CommittedEvent.from_db_row(updated)

    @staticmethod
    def get_aggregate(user_id: str) -> UserAggregate:
        """Current aggregate; all zeros for a user with no committed events."""
        with get_db_connection() as conn:
            total = conn.execute(
                "SELECT * FROM user_aggregates WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            stores = conn.execute(
                "SELECT store_id, count, saved, last_used_at FROM user_store_aggregates "
                "WHERE user_id = ? ORDER BY store_id",
                (user_id,),
            ).fetchall()

        if total is None:
            return UserAggregate.empty(user_id)

        return UserAggregate(
            user_id=user_id,
            total_saved=total["total_saved"],
            coupons_used_count=total["coupons_used_count"],
            per_store={
                row["store_id"]: StoreStats(
                    count=row["count"], saved=row["saved"], last_used_at=row["last_used_at"]
                )
                for row in stores
            },
            last_updated_at=total["last_updated_at"],
        )

    @staticmethod
    def list_events(
        user_id: str,
        store_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
        date_from: int | None = None,
        date_to: int | None = None,
    ) -> tuple[list[CommittedEvent], int]:
        """
        Committed events for a user, newest capture first.

        date_from and date_to bound captured_at (epoch ms, both inclusive).

        Returns:
            (page of events, total matching count)
        """
        where = "WHERE user_id = ?"
        params: list[Any] = [user_id]
        if store_id:
            where += " AND store_id = ?"
            params.append(store_id)
        if date_from is not None:
            where += " AND captured_at >= ?"
            params.append(date_from)
        if date_to is not None:
            where += " AND captured_at <= ?"
            params.append(date_to)

        with get_db_connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM savings_events {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM savings_events {where}
                ORDER BY captured_at DESC, fingerprint
                LIMIT ? OFFSET ?
                """,
                [*params, limit, offset],
            ).fetchall()

        return [CommittedEvent.from_db_row(dict(row)) for row in rows], total

    @staticmethod
    @retry_on_db_lock()
    def recompute_aggregate(user_id: str) -> UserAggregate:
        """
        Rebuild a user's aggregates from savings_events.

        Side Effects:
            - Replaces the user's rows in both aggregate tables
        """
        now = utc_now().isoformat()

        with db_transaction() as conn:
            conn.execute("DELETE FROM user_store_aggregates WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM user_aggregates WHERE user_id = ?", (user_id,))
            conn.execute(
                """
                INSERT INTO user_aggregates (user_id, total_saved, coupons_used_count, last_updated_at)
                SELECT user_id, ROUND(COALESCE(SUM(amount_saved), 0), 2), COUNT(*), ?
                FROM savings_events WHERE user_id = ?
                GROUP BY user_id
                """,
                (now, user_id),
            )
            conn.execute(
                """
                INSERT INTO user_store_aggregates (user_id, store_id, count, saved, last_used_at)
                SELECT user_id, store_id, COUNT(*), ROUND(COALESCE(SUM(amount_saved), 0), 2),
                       MAX(captured_at)
                FROM savings_events WHERE user_id = ?
                GROUP BY user_id, store_id
                """,
                (user_id,),
            )

        logger.info("Recomputed aggregates for user %s", user_id)
        return SavingsRepository.get_aggregate(user_id)
