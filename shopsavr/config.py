"""Centralized configuration for the ShopSavr savings pipeline.

Typed constants for the backend database, the extension-side sync engine,
the local event store, and the API.  Environment variable overrides use safe
defaults so both sides start without extra env configuration.
"""

from __future__ import annotations

import os
from pathlib import Path

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent
SHOPSAVR_ROOT = Path(__file__).parent


def _env(key: str, default: str) -> str:
    """Read a SHOPSAVR_* env var with a string default."""
    return os.getenv(key, default)


# --- App ---
APP_VERSION: str = "1.0.0"
ENV: str = _env("SHOPSAVR_ENV", "development")
DEBUG: bool = ENV == "development"
API_HOST: str = _env("SHOPSAVR_API_HOST", "0.0.0.0")
API_PORT: int = int(_env("SHOPSAVR_API_PORT", "8000"))

# --- Database (backend system of record) ---
DB_POOL_SIZE: int = int(_env("SHOPSAVR_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(_env("SHOPSAVR_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(_env("SHOPSAVR_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(_env("SHOPSAVR_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(_env("SHOPSAVR_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(_env("SHOPSAVR_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(_env("SHOPSAVR_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(_env("SHOPSAVR_DB_RETRY_JITTER", "0.1"))

# --- Extension: local event store ---
LOCAL_STORE_PATH: str = _env(
    "SHOPSAVR_LOCAL_STORE_PATH", str(SHOPSAVR_ROOT / "data" / "extension_events.db")
)
LOCAL_RETENTION_SECONDS: float = float(
    _env("SHOPSAVR_LOCAL_RETENTION_SECONDS", str(7 * 24 * 60 * 60))
)
FINGERPRINT_BUCKET_MS: int = int(_env("SHOPSAVR_FINGERPRINT_BUCKET_MS", "60000"))

# --- Extension: sync engine ---
SYNC_BATCH_SIZE: int = int(_env("SHOPSAVR_SYNC_BATCH_SIZE", "25"))
SYNC_INTERVAL_SECONDS: float = float(_env("SHOPSAVR_SYNC_INTERVAL_SECONDS", "300"))
SYNC_MAX_ATTEMPTS: int = int(_env("SHOPSAVR_SYNC_MAX_ATTEMPTS", "5"))
SYNC_BACKOFF_BASE_SECONDS: float = float(_env("SHOPSAVR_SYNC_BACKOFF_BASE_SECONDS", "1.0"))
SYNC_BACKOFF_MAX_SECONDS: float = float(_env("SHOPSAVR_SYNC_BACKOFF_MAX_SECONDS", "300"))
SYNC_INFLIGHT_STALE_SECONDS: float = float(
    _env("SHOPSAVR_SYNC_INFLIGHT_STALE_SECONDS", "120")
)
SYNC_MAX_BATCHES_PER_RUN: int = int(_env("SHOPSAVR_SYNC_MAX_BATCHES_PER_RUN", "20"))

# --- Extension: backend connection ---
API_BASE_URL: str = _env("SHOPSAVR_API_URL", "https://api.shopsavr.xyz")
HTTP_TIMEOUT_SECONDS: float = float(_env("SHOPSAVR_HTTP_TIMEOUT", "10.0"))

# --- API ---
API_LIST_LIMIT_DEFAULT: int = 50
API_LIST_LIMIT_MAX: int = 100
API_BATCH_SIZE_MAX: int = 500
SAVINGS_AMOUNT_MAX: float = 1_000_000.0  # per event

# --- Auth / CORS ---
GOOGLE_OAUTH_CLIENT_ID: str = _env("GOOGLE_OAUTH_CLIENT_ID", "")
AUTH_CACHE_TTL_SECONDS: int = int(_env("SHOPSAVR_AUTH_CACHE_TTL_SECONDS", "600"))
EXTENSION_ID: str = _env("SHOPSAVR_EXTENSION_ID", "")


def is_production() -> bool:
    """Check if running in production"""
    return ENV == "production"


def is_development() -> bool:
    """Check if running in development"""
    return ENV == "development"
