"""
Message Bus: validates capture messages and hands them to the local store.

Runs in the extension's background context. Many page contexts may post at
once; the store's enqueue is the single serialization point and is
idempotent per fingerprint, so the bus itself keeps no state.

receive() never raises. Invalid input is dropped at the edge and a storage
failure is reported in the Ack, so capture on the page keeps working.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from shopsavr.config import FINGERPRINT_BUCKET_MS
from shopsavr.errors import InvalidEvent
from shopsavr.extension.capture import CaptureSource
from shopsavr.extension.event_store import LocalEventStore
from shopsavr.extension.models import (
    COUPON_APPLIED,
    Ack,
    AckStatus,
    CouponAppliedMessage,
    EnqueueResult,
    SavingsEvent,
)
from shopsavr.infrastructure.fingerprint import event_fingerprint
from shopsavr.observability.logging import get_logger
from shopsavr.observability.telemetry import counter, log_event

logger = get_logger(__name__)


def parse_capture_message(raw_message: Any) -> CouponAppliedMessage:
    """
    Validate a raw page message against the COUPON_APPLIED schema.

    Raises:
        InvalidEvent: wrong shape, wrong type tag, or bad field values
    """
    if not isinstance(raw_message, Mapping):
        raise InvalidEvent(f"message must be an object, got {type(raw_message).__name__}")

    if raw_message.get("type") != COUPON_APPLIED:
        raise InvalidEvent(f"unsupported message type: {raw_message.get('type')!r}", ["type"])

    try:
        return CouponAppliedMessage.model_validate(dict(raw_message))
    except ValidationError as e:
        fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
        raise InvalidEvent(f"invalid {COUPON_APPLIED} message: {', '.join(fields)}", fields) from e


class MessageBus:
    """Entry point for capture signals in the background context.

    Args:
        store: durable queue receiving validated events
        capture_source: optional channel to subscribe ``receive`` to
        bucket_ms: fingerprint time-bucket width
    """

    def __init__(
        self,
        store: LocalEventStore,
        capture_source: CaptureSource | None = None,
        *,
        bucket_ms: int = FINGERPRINT_BUCKET_MS,
    ) -> None:
        self._store = store
        self._bucket_ms = bucket_ms
        if capture_source is not None:
            capture_source.subscribe(self.receive)

    def receive(self, raw_message: Any) -> Ack:
        try:
            message = parse_capture_message(raw_message)
        except InvalidEvent as e:
            counter("bus.invalid_events")
            log_event("bus.invalid_event", fields=e.fields)
            logger.info("Dropped invalid capture message: %s", e)
            return Ack(status=AckStatus.INVALID_EVENT, error=str(e))

        try:
            fingerprint = event_fingerprint(
                message.store_id,
                message.code,
                message.captured_at,
                self._store.client_instance_id,
                bucket_ms=self._bucket_ms,
            )
        except ValueError as e:
            counter("bus.invalid_events")
            return Ack(status=AckStatus.INVALID_EVENT, error=str(e))

        event = SavingsEvent.from_message(message, fingerprint)

        try:
            result = self._store.enqueue(event)
        except (sqlite3.Error, OverflowError) as e:
            counter("bus.store_errors")
            logger.error("Local store rejected event %s: %s", fingerprint[:12], e)
            return Ack(status=AckStatus.UNAVAILABLE, fingerprint=fingerprint, error=str(e))

        if result is EnqueueResult.DUPLICATE:
            counter("bus.duplicates")
            return Ack(status=AckStatus.DUPLICATE, fingerprint=fingerprint)

        counter("bus.accepted")
        log_event("bus.accepted", code=event.code, store_id=event.store_id)
        return Ack(status=AckStatus.ACCEPTED, fingerprint=fingerprint)
