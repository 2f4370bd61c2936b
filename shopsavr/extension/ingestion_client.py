"""
HTTP transport from the extension to the backend ingest endpoint.

Maps transport-level failures onto the pipeline's error taxonomy:

    connection error / timeout / 401 / 408 / 429 / 5xx   → TransientSyncFailure
    any other 4xx for the whole batch                    → BatchRejected
    2xx with an unparseable body                         → TransientSyncFailure
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

import httpx
from pydantic import ValidationError

from shopsavr.config import API_BASE_URL, HTTP_TIMEOUT_SECONDS
from shopsavr.errors import BatchRejected, TransientSyncFailure
from shopsavr.extension.models import SavingsEvent
from shopsavr.observability.logging import get_logger
from shopsavr.savings.models import IngestResponse, PerEventResult

logger = get_logger(__name__)

INGEST_PATH = "/api/savings/events"

_TRANSIENT_STATUSES = {401, 408, 429}


class IngestionTransport(Protocol):
    """What the SyncEngine needs from a backend connection."""

    def send(self, events: list[SavingsEvent]) -> list[PerEventResult]: ...


class HttpIngestionClient:
    """POSTs batches to the backend with a bearer token.

    Args:
        base_url: backend root, e.g. https://api.shopsavr.xyz
        token_provider: returns the current auth token (or None when signed out)
        timeout: request timeout in seconds
        http_client: pre-built httpx.Client (tests pass a TestClient)
    """

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        token_provider: Callable[[], str | None] | None = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(base_url=base_url, timeout=timeout)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self._token_provider() if self._token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def send(self, events: list[SavingsEvent]) -> list[PerEventResult]:
        payload = {"events": [event.to_wire() for event in events]}

        try:
            response = self._client.post(INGEST_PATH, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise TransientSyncFailure(f"ingest request timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransientSyncFailure(f"ingest request failed: {e}") from e

        status = response.status_code
        if status in _TRANSIENT_STATUSES or status >= 500:
            raise TransientSyncFailure(f"backend returned {status}", status_code=status)
        if status >= 400:
            raise BatchRejected(f"backend rejected batch with {status}", status_code=status)

        try:
            parsed = IngestResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error("Malformed ingest response (%d bytes): %s", len(response.content), e)
            raise TransientSyncFailure("malformed ingest response", status_code=status) from e

        return parsed.results

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
