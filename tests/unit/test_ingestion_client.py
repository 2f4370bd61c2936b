"""Unit tests for the HTTP ingestion client

Tests cover:
- Request shape (path, bearer token, camelCase events)
- Mapping of HTTP failures onto TransientSyncFailure / BatchRejected
- Malformed 2xx bodies are transient
"""

from __future__ import annotations

import json

import httpx
import pytest

from shopsavr.errors import BatchRejected, TransientSyncFailure
from shopsavr.extension.ingestion_client import INGEST_PATH, HttpIngestionClient
from shopsavr.extension.models import SavingsEvent
from shopsavr.savings.models import PerEventOutcome


def make_events() -> list[SavingsEvent]:
    return [
        SavingsEvent(
            fingerprint="fp-1",
            coupon_id="c1",
            code="SAVE10",
            store_id="example.com",
            captured_at=1_704_067_200_000,
            amount_saved=5.0,
        ),
        SavingsEvent(
            fingerprint="fp-2",
            coupon_id="c2",
            code="FREESHIP",
            store_id="example.com",
            captured_at=1_704_067_260_000,
        ),
    ]


def client_for(handler, token: str | None = "tok-123") -> HttpIngestionClient:
    http_client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://backend.test")
    return HttpIngestionClient(token_provider=lambda: token, http_client=http_client)


def test_posts_camel_case_batch_with_bearer_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "results": [
                    {"fingerprint": "fp-1", "outcome": "COMMITTED"},
                    {"fingerprint": "fp-2", "outcome": "REJECTED", "reason": "bad code"},
                ]
            },
        )

    results = client_for(handler).send(make_events())

    assert seen["path"] == INGEST_PATH
    assert seen["auth"] == "Bearer tok-123"
    first, second = seen["body"]["events"]
    assert first == {
        "fingerprint": "fp-1",
        "couponId": "c1",
        "code": "SAVE10",
        "storeId": "example.com",
        "capturedAt": 1_704_067_200_000,
        "amountSaved": 5.0,
    }
    assert "amountSaved" not in second
    assert [r.outcome for r in results] == [PerEventOutcome.COMMITTED, PerEventOutcome.REJECTED]
    assert results[1].reason == "bad code"


def test_no_token_sends_no_authorization_header():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"results": []})

    client_for(handler, token=None).send(make_events())

    assert seen["auth"] is None


@pytest.mark.parametrize("status_code", [401, 408, 429, 500, 502, 503])
def test_retryable_statuses_are_transient(status_code):
    client = client_for(lambda request: httpx.Response(status_code, json={"detail": "nope"}))

    with pytest.raises(TransientSyncFailure) as exc_info:
        client.send(make_events())

    assert exc_info.value.status_code == status_code


@pytest.mark.parametrize("status_code", [400, 403, 413, 422])
def test_other_client_errors_reject_the_batch(status_code):
    client = client_for(lambda request: httpx.Response(status_code, json={"detail": "nope"}))

    with pytest.raises(BatchRejected) as exc_info:
        client.send(make_events())

    assert exc_info.value.status_code == status_code


def test_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientSyncFailure, match="failed"):
        client_for(handler).send(make_events())


def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(TransientSyncFailure, match="timed out"):
        client_for(handler).send(make_events())


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json={"unexpected": True}),
        httpx.Response(200, json={"results": [{"fingerprint": "fp-1", "outcome": "MAYBE"}]}),
    ],
)
def test_malformed_success_body_is_transient(response):
    with pytest.raises(TransientSyncFailure, match="malformed"):
        client_for(lambda request: response).send(make_events())
