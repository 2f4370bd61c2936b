"""
In-process telemetry for the savings pipeline.

Nothing is exported to an external metrics backend.  Events go to the
``shopsavr.telemetry`` logger and counters/latencies live in memory so the
sync engine status and tests can read them back.  Counters are touched from
the sync thread and API worker threads, so updates take a lock.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger("shopsavr.telemetry")

_LOCK = threading.Lock()
_COUNTERS: dict[str, int] = {}
_LATENCIES: dict[str, list[float]] = {}


def _latency_key(metric_name: str) -> str:
    return metric_name if metric_name.endswith("_ms") else f"{metric_name}_ms"


def log_event(event_name: str, **fields: Any) -> None:
    """
    Structured log event. Coupon codes are fine to log; user ids are not.

    Side Effects:
        - Writes to logger (info level)
    """
    logger.info("event=%s %s", event_name, fields)


def counter(name: str, increment: int = 1) -> int:
    """
    Increment an in-memory counter and return its new value.

    Side Effects:
        - Modifies _COUNTERS (in-memory state)
        - Writes to logger (debug level)
    """
    with _LOCK:
        value = _COUNTERS.get(name, 0) + increment
        _COUNTERS[name] = value
    logger.debug("counter=%s value=%s", name, value)
    return value


def get_counter(name: str) -> int:
    with _LOCK:
        return _COUNTERS.get(name, 0)


def snapshot_counters(prefix: str = "") -> dict[str, int]:
    """Copy of all counters whose name starts with ``prefix``."""
    with _LOCK:
        return {k: v for k, v in _COUNTERS.items() if k.startswith(prefix)}


@contextlib.contextmanager
def time_block(metric_name: str) -> Iterator[None]:
    """
    Record how long the wrapped block took, in milliseconds.

    Side Effects:
        - Appends to _LATENCIES (in-memory state)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000
        key = _latency_key(metric_name)
        with _LOCK:
            _LATENCIES.setdefault(key, []).append(elapsed_ms)
        logger.debug("timing=%s ms=%.3f", key, elapsed_ms)


def get_latency_stats(metric_name: str) -> dict[str, float]:
    """count/min/max/avg/p50/p95 for a recorded latency metric."""
    with _LOCK:
        samples = sorted(_LATENCIES.get(_latency_key(metric_name), []))
    if not samples:
        return {"count": 0, "min": 0.0, "max": 0.0, "avg": 0.0, "p50": 0.0, "p95": 0.0}

    count = len(samples)
    return {
        "count": count,
        "min": samples[0],
        "max": samples[-1],
        "avg": sum(samples) / count,
        "p50": samples[int(count * 0.50)],
        "p95": samples[min(int(count * 0.95), count - 1)],
    }


def reset() -> None:
    """Clear counters and latencies (tests only)."""
    with _LOCK:
        _COUNTERS.clear()
        _LATENCIES.clear()
