"""Health check endpoints for the ShopSavr API.

- /health - Service liveness and version
- /health/db - Database connection pool health
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from shopsavr.config import APP_VERSION
from shopsavr.observability.telemetry import get_latency_stats

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Service status, version and ingest latency."""
    return {
        "status": "healthy",
        "service": "ShopSavr API",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "ingest_latency_ms": get_latency_stats("ingest.batch"),
    }


@router.get("/health/db")
async def database_health() -> dict[str, Any]:
    """
    Database health check endpoint.

    Reports pool usage; degraded above 80%.
    """
    from shopsavr.infrastructure.database import get_pool_stats

    stats = get_pool_stats()
    usage_percent = stats["usage_percent"]

    return {
        "status": "degraded" if usage_percent > 80 else "healthy",
        "pool": stats,
        "warning": "Pool usage high" if usage_percent > 80 else None,
    }
