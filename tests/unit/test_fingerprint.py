"""Unit tests for event fingerprinting

Tests cover:
- Determinism and normalization of code / store id
- Time bucketing (same minute collapses, next minute does not)
- Client instance separation
- Missing inputs are refused
"""

from __future__ import annotations

import pytest

from shopsavr.infrastructure.fingerprint import (
    event_fingerprint,
    normalize_code,
    normalize_store_id,
    timestamp_bucket,
)
from shopsavr.observability.telemetry import get_counter

T0 = 1_704_067_200_000  # minute-aligned epoch ms


def test_fingerprint_is_deterministic():
    a = event_fingerprint("example.com", "SAVE10", T0, "install-1")
    b = event_fingerprint("example.com", "SAVE10", T0, "install-1")

    assert a == b
    assert len(a) == 64


def test_fingerprint_normalizes_code_and_store():
    """Code case and store-id case/whitespace do not create new events"""
    a = event_fingerprint("Example.COM ", " save10", T0, "install-1")
    b = event_fingerprint("example.com", "SAVE10", T0, "install-1")

    assert a == b
    assert normalize_code(" save10 ") == "SAVE10"
    assert normalize_store_id(" Example.COM") == "example.com"


def test_same_bucket_collapses():
    a = event_fingerprint("example.com", "SAVE10", T0, "install-1")
    b = event_fingerprint("example.com", "SAVE10", T0 + 59_999, "install-1")

    assert a == b


def test_next_bucket_is_a_new_event():
    a = event_fingerprint("example.com", "SAVE10", T0, "install-1")
    b = event_fingerprint("example.com", "SAVE10", T0 + 60_000, "install-1")

    assert a != b


def test_custom_bucket_width():
    a = event_fingerprint("example.com", "SAVE10", T0, "install-1", bucket_ms=1_000)
    b = event_fingerprint("example.com", "SAVE10", T0 + 1_500, "install-1", bucket_ms=1_000)

    assert a != b
    assert timestamp_bucket(T0 + 1_500, 1_000) == T0 // 1_000 + 1


def test_different_installs_do_not_collide():
    a = event_fingerprint("example.com", "SAVE10", T0, "install-1")
    b = event_fingerprint("example.com", "SAVE10", T0, "install-2")

    assert a != b


def test_different_code_or_store_differ():
    base = event_fingerprint("example.com", "SAVE10", T0, "install-1")

    assert event_fingerprint("example.com", "SAVE20", T0, "install-1") != base
    assert event_fingerprint("other.com", "SAVE10", T0, "install-1") != base


@pytest.mark.parametrize(
    ("store_id", "code", "instance"),
    [("", "SAVE10", "i"), ("example.com", "  ", "i"), ("example.com", "SAVE10", "")],
)
def test_missing_inputs_raise_and_count(store_id, code, instance):
    with pytest.raises(ValueError, match="fingerprint requires"):
        event_fingerprint(store_id, code, T0, instance)

    assert get_counter("fingerprint.drops") == 1


def test_non_positive_bucket_rejected():
    with pytest.raises(ValueError):
        timestamp_bucket(T0, 0)
