"""
In-process channel between page contexts and the background message bus.

Checkout-page instrumentation is an external signal source; all it needs is
something to ``post`` a candidate message to.  The channel is created by
whoever wires the background context and handed to the MessageBus, which
subscribes to it.  Nothing here is a module-level singleton.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from shopsavr.extension.models import Ack, AckStatus
from shopsavr.observability.logging import get_logger

logger = get_logger(__name__)

CaptureHandler = Callable[[Any], Ack]


class CaptureSource(Protocol):
    """Capability the MessageBus receives at construction."""

    def subscribe(self, handler: CaptureHandler) -> None: ...


class CaptureChannel:
    """Synchronous request/response channel with a single listener."""

    def __init__(self) -> None:
        self._handler: CaptureHandler | None = None

    def subscribe(self, handler: CaptureHandler) -> None:
        if self._handler is not None:
            raise RuntimeError("CaptureChannel already has a listener")
        self._handler = handler

    def post(self, message: Any) -> Ack:
        """Deliver a page message and return the typed ack."""
        if self._handler is None:
            logger.warning("Capture message posted with no listener attached")
            return Ack(status=AckStatus.UNAVAILABLE, error="no listener")
        return self._handler(message)
