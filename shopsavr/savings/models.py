"""
Savings domain models: the ingest wire contract and the dashboard aggregate.

The wire format is camelCase (the extension speaks JSON to the backend);
Python attributes stay snake_case.  Both sides of the pipeline import these
models so the request/response contract has one definition.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel

from shopsavr.config import SAVINGS_AMOUNT_MAX
from shopsavr.infrastructure.fingerprint import MAX_EPOCH_MS, normalize_code, normalize_store_id


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PerEventOutcome(str, Enum):
    """Backend verdict for one event of a batch."""

    COMMITTED = "COMMITTED"  # First time seen, persisted and folded
    ALREADY_COMMITTED = "ALREADY_COMMITTED"  # Fingerprint seen before, no re-aggregation
    REJECTED = "REJECTED"  # Invalid for this backend; counts toward the client's attempt limit
    UNAVAILABLE = "UNAVAILABLE"  # Backend could not decide; client re-sends without penalty

    @property
    def acknowledged(self) -> bool:
        return self in (PerEventOutcome.COMMITTED, PerEventOutcome.ALREADY_COMMITTED)


class SavingsEventIn(_CamelModel):
    """One savings event as sent by the extension."""

    fingerprint: str = Field(..., min_length=1, max_length=128)
    coupon_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=1, max_length=64)
    store_id: str = Field(..., min_length=1, max_length=255)
    captured_at: int = Field(..., gt=0, le=MAX_EPOCH_MS, description="Client-observed epoch ms")
    amount_saved: float | None = Field(
        default=None, ge=0, le=SAVINGS_AMOUNT_MAX, allow_inf_nan=False
    )

    @field_validator("code")
    @classmethod
    def normalize_coupon_code(cls, v: str) -> str:
        v = normalize_code(v)
        if not v:
            raise ValueError("code cannot be empty")
        return v

    @field_validator("store_id")
    @classmethod
    def normalize_store(cls, v: str) -> str:
        v = normalize_store_id(v)
        if not v:
            raise ValueError("store_id cannot be empty")
        return v


class PerEventResult(_CamelModel):
    fingerprint: str
    outcome: PerEventOutcome
    reason: str | None = None


class IngestRequest(_CamelModel):
    """Batch envelope. Events stay loosely typed here so one bad event is
    rejected on its own instead of failing the whole batch with a 422."""

    events: list[dict[str, Any]] = Field(default_factory=list)


class IngestResponse(_CamelModel):
    results: list[PerEventResult]


class StoreStats(_CamelModel):
    count: int = 0
    saved: float = 0.0
    last_used_at: int | None = None  # newest capturedAt, epoch ms


class UserAggregate(_CamelModel):
    """Dashboard snapshot of a user's committed savings."""

    user_id: str
    total_saved: float = 0.0
    coupons_used_count: int = 0
    per_store: dict[str, StoreStats] = Field(default_factory=dict)
    last_updated_at: datetime | None = None

    @computed_field(alias="averageSavedPerCoupon")
    @property
    def average_saved_per_coupon(self) -> float:
        if not self.coupons_used_count:
            return 0.0
        return round(self.total_saved / self.coupons_used_count, 2)

    @classmethod
    def empty(cls, user_id: str) -> UserAggregate:
        return cls(user_id=user_id)


class CommittedEvent(_CamelModel):
    """Canonical backend record of a committed savings event."""

    fingerprint: str
    coupon_id: str
    code: str
    store_id: str
    captured_at: int
    amount_saved: float | None = None
    committed_at: datetime
    amended_at: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> CommittedEvent:
        return cls(
            fingerprint=row["fingerprint"],
            coupon_id=row["coupon_id"],
            code=row["code"],
            store_id=row["store_id"],
            captured_at=row["captured_at"],
            amount_saved=row["amount_saved"],
            committed_at=datetime.fromisoformat(row["committed_at"]),
            amended_at=datetime.fromisoformat(row["amended_at"]) if row["amended_at"] else None,
        )


class AmendAmountRequest(_CamelModel):
    amount_saved: float = Field(..., ge=0, le=SAVINGS_AMOUNT_MAX, allow_inf_nan=False)


class SavingsHistory(_CamelModel):
    events: list[CommittedEvent]
    total: int
    limit: int
    offset: int
