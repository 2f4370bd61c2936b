"""
ShopSavr extension side - capture, local queue and background sync.
"""

from shopsavr.extension.capture import CaptureChannel
from shopsavr.extension.event_store import LocalEventStore
from shopsavr.extension.ingestion_client import HttpIngestionClient, IngestionTransport
from shopsavr.extension.message_bus import MessageBus, parse_capture_message
from shopsavr.extension.models import (
    Ack,
    AckStatus,
    CouponAppliedMessage,
    EnqueueResult,
    SavingsEvent,
    SyncReport,
    SyncState,
)
from shopsavr.extension.sync_engine import SyncEngine, SyncEngineState

__all__ = [
    # Models
    "Ack",
    "AckStatus",
    "CouponAppliedMessage",
    "EnqueueResult",
    "SavingsEvent",
    "SyncReport",
    "SyncState",
    # Capture and bus
    "CaptureChannel",
    "MessageBus",
    "parse_capture_message",
    # Store
    "LocalEventStore",
    # Sync
    "HttpIngestionClient",
    "IngestionTransport",
    "SyncEngine",
    "SyncEngineState",
]
