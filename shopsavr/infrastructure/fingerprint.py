"""
Deterministic fingerprints for coupon-applied events.

The fingerprint is the idempotency key of the whole pipeline: the local store
refuses a second row with the same key and the backend commits each key at
most once.  Key material is (store id, coupon code, capture-time bucket,
client instance id); two captures of the same code on the same store by the
same install inside one bucket are the same savings event.
"""

from __future__ import annotations

from hashlib import sha256

from shopsavr.config import FINGERPRINT_BUCKET_MS
from shopsavr.observability.telemetry import counter, log_event

# Largest value a SQLite INTEGER column can hold
MAX_EPOCH_MS = 2**63 - 1


def normalize_code(code: str) -> str:
    return code.strip().upper()


def normalize_store_id(store_id: str) -> str:
    return store_id.strip().lower()


def timestamp_bucket(captured_at_ms: int, bucket_ms: int = FINGERPRINT_BUCKET_MS) -> int:
    if bucket_ms <= 0:
        raise ValueError("bucket_ms must be positive")
    return captured_at_ms // bucket_ms


def event_fingerprint(
    store_id: str,
    code: str,
    captured_at_ms: int,
    client_instance_id: str,
    bucket_ms: int = FINGERPRINT_BUCKET_MS,
) -> str:
    """
    Compute the SHA-256 fingerprint. Raises ValueError if required inputs are missing.
    """
    missing = [
        name
        for name, val in (
            ("store_id", store_id),
            ("code", code),
            ("client_instance_id", client_instance_id),
        )
        if not val or not str(val).strip()
    ]
    if missing:
        counter("fingerprint.drops")
        log_event("fingerprint.drop", missing_fields=missing)
        raise ValueError(f"fingerprint requires: {', '.join(missing)}")

    material = "|".join(
        (
            normalize_store_id(store_id),
            normalize_code(code),
            str(timestamp_bucket(captured_at_ms, bucket_ms)),
            client_instance_id.strip(),
        )
    )
    return sha256(material.encode("utf-8")).hexdigest()
