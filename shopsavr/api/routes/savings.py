"""
Savings API endpoints.

Ingestion for the extension's sync engine plus the dashboard reads.  Every
endpoint is scoped to the authenticated user.  Handlers are plain functions
so FastAPI runs them in its threadpool; the aggregator's per-user locks then
serialize concurrent batches from the same user.
"""

from __future__ import annotations

import sqlite3

from fastapi import APIRouter, Depends, HTTPException, Query, status

from shopsavr.api.middleware.user_auth import AuthenticatedUser, get_current_user
from shopsavr.config import API_BATCH_SIZE_MAX, API_LIST_LIMIT_DEFAULT, API_LIST_LIMIT_MAX
from shopsavr.infrastructure.fingerprint import MAX_EPOCH_MS
from shopsavr.observability.logging import get_logger
from shopsavr.savings import (
    AmendAmountRequest,
    CommittedEvent,
    IngestRequest,
    IngestResponse,
    SavingsAggregator,
    SavingsHistory,
    UserAggregate,
)

router = APIRouter(prefix="/api/savings", tags=["savings"])
logger = get_logger(__name__)

_aggregator = SavingsAggregator()


def get_aggregator() -> SavingsAggregator:
    """Dependency hook; tests may override it."""
    return _aggregator


def _storage_unavailable(action: str, exc: Exception) -> HTTPException:
    logger.error("Failed to %s: %s", action, exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Service temporarily unavailable.",
    )


@router.post("/events", response_model=IngestResponse)
def ingest_events(
    request: IngestRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    aggregator: SavingsAggregator = Depends(get_aggregator),
) -> IngestResponse:
    """
    Commit a batch of savings events from the extension.

    Each event gets its own verdict; the response lists them in request order.
    """
    if len(request.events) > API_BATCH_SIZE_MAX:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Batch too large (max {API_BATCH_SIZE_MAX} events)",
        )

    results = aggregator.ingest(request.events, user.id)
    return IngestResponse(results=results)


@router.get("/summary", response_model=UserAggregate)
def get_summary(
    user: AuthenticatedUser = Depends(get_current_user),
    aggregator: SavingsAggregator = Depends(get_aggregator),
) -> UserAggregate:
    """Dashboard totals: total saved, coupons used, per-store breakdown."""
    try:
        return aggregator.get_aggregate(user.id)
    except (sqlite3.Error, RuntimeError) as e:
        raise _storage_unavailable("load savings summary", e) from None


@router.get("/history", response_model=SavingsHistory)
def get_history(
    user: AuthenticatedUser = Depends(get_current_user),
    aggregator: SavingsAggregator = Depends(get_aggregator),
    store_id: str | None = Query(None, alias="storeId", max_length=255),
    limit: int = Query(API_LIST_LIMIT_DEFAULT, ge=1, le=API_LIST_LIMIT_MAX),
    offset: int = Query(0, ge=0),
    date_from: int | None = Query(None, alias="dateFrom", ge=0, le=MAX_EPOCH_MS),
    date_to: int | None = Query(None, alias="dateTo", ge=0, le=MAX_EPOCH_MS),
) -> SavingsHistory:
    """Committed savings events, newest first, optionally for one store or period.

    dateFrom and dateTo are inclusive epoch-millisecond bounds on capture time.
    """
    try:
        return aggregator.history(
            user.id,
            store_id=store_id,
            limit=limit,
            offset=offset,
            date_from=date_from,
            date_to=date_to,
        )
    except (sqlite3.Error, RuntimeError) as e:
        raise _storage_unavailable("load savings history", e) from None


@router.patch("/events/{fingerprint}", response_model=CommittedEvent)
def amend_event_amount(
    fingerprint: str,
    request: AmendAmountRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    aggregator: SavingsAggregator = Depends(get_aggregator),
) -> CommittedEvent:
    """
    Record the amount saved for an event captured without one.

    Totals move by the difference between the new and the previous amount.
    """
    try:
        event = aggregator.amend_amount(user.id, fingerprint, request.amount_saved)
    except (sqlite3.Error, RuntimeError) as e:
        raise _storage_unavailable("amend savings event", e) from None

    if event is None:
        raise HTTPException(status_code=404, detail="Savings event not found")
    return event
