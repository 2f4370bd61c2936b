"""
Tests for the backend database layer

Lock retry, pool behaviour, transactions, and schema init/validation.
"""

from __future__ import annotations

import sqlite3

import pytest

from shopsavr.infrastructure.database import (
    db_transaction,
    get_db_connection,
    get_pool,
    get_pool_stats,
    init_database,
    reset_pool,
    retry_on_db_lock,
    validate_schema,
)
from shopsavr.infrastructure.retry import BackoffPolicy


def test_retry_decorator_success():
    """Test retry decorator with successful operation"""
    call_count = [0]

    @retry_on_db_lock(max_retries=3, base_delay=0.01)
    def successful_operation():
        call_count[0] += 1
        return "success"

    assert successful_operation() == "success"
    assert call_count[0] == 1


def test_retry_decorator_recovers_from_lock():
    """Test retry decorator recovers from database lock errors"""
    call_count = [0]

    @retry_on_db_lock(max_retries=3, base_delay=0.01, max_delay=0.05)
    def flaky_operation():
        call_count[0] += 1
        if call_count[0] < 3:
            raise sqlite3.OperationalError("database is locked")
        return "success"

    assert flaky_operation() == "success"
    assert call_count[0] == 3


def test_retry_decorator_fails_after_max_retries():
    """Test retry decorator gives up after max retries"""
    call_count = [0]

    @retry_on_db_lock(max_retries=2, base_delay=0.01)
    def always_fails():
        call_count[0] += 1
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(sqlite3.OperationalError, match="database is locked"):
        always_fails()

    assert call_count[0] == 3, "initial attempt + 2 retries"


def test_retry_decorator_ignores_non_lock_errors():
    """Test retry decorator doesn't retry non-lock errors"""
    call_count = [0]

    @retry_on_db_lock(max_retries=3, base_delay=0.01)
    def schema_error():
        call_count[0] += 1
        raise sqlite3.OperationalError("no such table: foo")

    with pytest.raises(sqlite3.OperationalError, match="no such table"):
        schema_error()

    assert call_count[0] == 1


def test_pool_singleton(backend_db):
    assert get_pool() is get_pool()


def test_reset_pool_closes_current_pool(backend_db):
    pool = get_pool()

    reset_pool()

    assert pool.closed is True
    assert get_pool() is not pool


def test_pool_stats(backend_db):
    stats = get_pool_stats()

    assert stats["pool_size"] == 5
    assert stats["available"] + stats["in_use"] == stats["pool_size"]
    assert stats["temporary"] == 0
    assert stats["closed"] is False


def test_connection_requires_initialized_database(tmp_path, monkeypatch):
    monkeypatch.setenv("SHOPSAVR_DB_PATH", str(tmp_path / "missing.db"))
    reset_pool()
    try:
        with pytest.raises(FileNotFoundError), get_db_connection():
            pass
    finally:
        reset_pool()


def test_db_transaction_commits(backend_db):
    with db_transaction() as conn:
        conn.execute(
            "INSERT INTO user_aggregates (user_id, total_saved, coupons_used_count, last_updated_at) "
            "VALUES ('u1', 1.5, 1, 'now')"
        )

    with get_db_connection() as conn:
        row = conn.execute("SELECT total_saved FROM user_aggregates WHERE user_id = 'u1'").fetchone()
    assert row["total_saved"] == 1.5


def test_db_transaction_rolls_back_on_error(backend_db):
    with pytest.raises(ValueError), db_transaction() as conn:
        conn.execute(
            "INSERT INTO user_aggregates (user_id, total_saved, coupons_used_count, last_updated_at) "
            "VALUES ('u1', 1.5, 1, 'now')"
        )
        raise ValueError("Intentional error")

    with get_db_connection() as conn:
        count = conn.execute("SELECT COUNT(*) FROM user_aggregates").fetchone()[0]
    assert count == 0


def test_init_database_is_idempotent(backend_db):
    init_database()
    init_database()

    assert validate_schema() is True


def test_validate_schema_reports_missing_tables(backend_db):
    with db_transaction() as conn:
        conn.execute("DROP TABLE user_store_aggregates")

    with pytest.raises(ValueError, match="user_store_aggregates"):
        validate_schema()


def test_backoff_policy_doubles_and_caps():
    policy = BackoffPolicy(stage="test", base_delay=1.0, max_delay=5.0)

    assert [policy.delay_for(n) for n in range(0, 6)] == [0.0, 1.0, 2.0, 4.0, 5.0, 5.0]
    assert policy.schedule(2, now=100.0) == 102.0


def test_backoff_policy_survives_huge_attempt_counts():
    policy = BackoffPolicy(stage="test", base_delay=1.0, max_delay=300.0)

    assert policy.delay_for(1025) == 300.0
    assert policy.delay_for(10**6) == 300.0
