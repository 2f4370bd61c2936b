"""
ShopSavr Savings module - backend ingestion and dashboard aggregates.
"""

from shopsavr.savings.aggregator import SavingsAggregator
from shopsavr.savings.models import (
    AmendAmountRequest,
    CommittedEvent,
    IngestRequest,
    IngestResponse,
    PerEventOutcome,
    PerEventResult,
    SavingsEventIn,
    SavingsHistory,
    StoreStats,
    UserAggregate,
)
from shopsavr.savings.repository import SavingsRepository

__all__ = [
    # Models
    "AmendAmountRequest",
    "CommittedEvent",
    "IngestRequest",
    "IngestResponse",
    "PerEventOutcome",
    "PerEventResult",
    "SavingsEventIn",
    "SavingsHistory",
    "StoreStats",
    "UserAggregate",
    # Repository
    "SavingsRepository",
    # Aggregator
    "SavingsAggregator",
]
