"""
Backend schema for committed savings events and per-user aggregates.

savings_events is the canonical ledger (one row per fingerprint, ever).
user_aggregates / user_store_aggregates are the incrementally folded totals
the dashboard reads; they are only written in the same transaction as the
savings_events row that caused the change.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from shopsavr.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS savings_events (
        fingerprint TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        coupon_id TEXT NOT NULL,
        code TEXT NOT NULL,
        store_id TEXT NOT NULL,
        captured_at INTEGER NOT NULL,
        amount_saved REAL,
        committed_at TEXT NOT NULL,
        amended_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_savings_events_user_captured
    ON savings_events(user_id, captured_at);

    CREATE INDEX IF NOT EXISTS idx_savings_events_user_store
    ON savings_events(user_id, store_id);

    CREATE TABLE IF NOT EXISTS user_aggregates (
        user_id TEXT PRIMARY KEY,
        total_saved REAL NOT NULL DEFAULT 0,
        coupons_used_count INTEGER NOT NULL DEFAULT 0,
        last_updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS user_store_aggregates (
        user_id TEXT NOT NULL,
        store_id TEXT NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        saved REAL NOT NULL DEFAULT 0,
        last_used_at INTEGER,
        PRIMARY KEY (user_id, store_id)
    );
"""

REQUIRED_TABLES: dict[str, list[str]] = {
    "savings_events": [
        "fingerprint",
        "user_id",
        "code",
        "store_id",
        "captured_at",
        "amount_saved",
    ],
    "user_aggregates": ["user_id", "total_saved", "coupons_used_count", "last_updated_at"],
    "user_store_aggregates": ["user_id", "store_id", "count", "saved"],
}


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Args:
        db_path: Path to the database file

    Side Effects:
        - Creates parent directory and tables/indexes if they don't exist
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database initialized: %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected schema

    Raises:
        ValueError: If tables or columns are missing
    """
    cursor = conn.cursor()
    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    existing_tables = {row[0] for row in cursor.fetchall()}

    missing_tables = set(REQUIRED_TABLES) - existing_tables
    if missing_tables:
        raise ValueError(f"Database missing tables: {missing_tables}")

    for table, required_cols in REQUIRED_TABLES.items():
        # Table names come from the constant above; PRAGMA cannot be parameterized
        cursor.execute(f"PRAGMA table_info({table})")
        existing_cols = {row[1] for row in cursor.fetchall()}
        missing_cols = set(required_cols) - existing_cols
        if missing_cols:
            raise ValueError(f"Table '{table}' missing columns: {missing_cols}")

    return True
