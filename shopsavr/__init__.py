"""ShopSavr - coupon savings capture, sync and dashboard aggregates"""

from __future__ import annotations

__version__ = "1.0.0"


# Lazy imports so the extension side does not pull in FastAPI and vice versa
def __getattr__(name: str):
    """
    Lazy imports to avoid loading the backend stack when only the extension is used.
    """
    if name in ("MessageBus", "LocalEventStore", "SyncEngine", "HttpIngestionClient"):
        from shopsavr import extension

        return getattr(extension, name)

    if name in ("SavingsAggregator", "SavingsRepository", "UserAggregate"):
        from shopsavr import savings

        return getattr(savings, name)

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "HttpIngestionClient",
    "LocalEventStore",
    "MessageBus",
    "SavingsAggregator",
    "SavingsRepository",
    "SyncEngine",
    "UserAggregate",
]
