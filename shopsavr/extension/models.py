"""
Extension-side models: capture messages, queued savings events, acks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from shopsavr.config import SAVINGS_AMOUNT_MAX
from shopsavr.infrastructure.fingerprint import MAX_EPOCH_MS, normalize_code, normalize_store_id

COUPON_APPLIED = "COUPON_APPLIED"


class SyncState(str, Enum):
    """Lifecycle of an entry in the local event store."""

    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"  # carries attempts; eligible again after its backoff
    DEAD_LETTERED = "DEAD_LETTERED"  # attempt limit reached; diagnostics only


class CouponAppliedMessage(BaseModel):
    """Message posted by in-page capture. camelCase or snake_case keys accepted."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    type: Literal["COUPON_APPLIED"]
    coupon_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=1, max_length=64)
    store_id: str = Field(..., min_length=1, max_length=255)
    captured_at: int = Field(..., gt=0, le=MAX_EPOCH_MS)
    amount_saved: float | None = Field(
        default=None, ge=0, le=SAVINGS_AMOUNT_MAX, allow_inf_nan=False
    )

    @field_validator("captured_at", mode="before")
    @classmethod
    def reject_bool_timestamp(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("capturedAt must be epoch milliseconds")
        return v


class SavingsEvent(BaseModel):
    """A queued savings event plus its local sync bookkeeping."""

    model_config = ConfigDict(use_enum_values=False)

    fingerprint: str
    coupon_id: str
    code: str
    store_id: str
    captured_at: int
    amount_saved: float | None = None
    sync_state: SyncState = SyncState.PENDING
    attempts: int = 0
    next_retry_at: float | None = None
    in_flight_since: float | None = None
    last_error: str | None = None
    committed_at: float | None = None
    created_at: float | None = None

    @classmethod
    def from_message(cls, message: CouponAppliedMessage, fingerprint: str) -> SavingsEvent:
        return cls(
            fingerprint=fingerprint,
            coupon_id=message.coupon_id,
            code=normalize_code(message.code),
            store_id=normalize_store_id(message.store_id),
            captured_at=message.captured_at,
            amount_saved=message.amount_saved,
        )

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> SavingsEvent:
        return cls(
            fingerprint=row["fingerprint"],
            coupon_id=row["coupon_id"],
            code=row["code"],
            store_id=row["store_id"],
            captured_at=row["captured_at"],
            amount_saved=row["amount_saved"],
            sync_state=SyncState(row["sync_state"]),
            attempts=row["attempts"],
            next_retry_at=row["next_retry_at"],
            in_flight_since=row["in_flight_since"],
            last_error=row["last_error"],
            committed_at=row["committed_at"],
            created_at=row["created_at"],
        )

    def to_wire(self) -> dict[str, Any]:
        """Payload for the backend ingest endpoint (camelCase)."""
        payload: dict[str, Any] = {
            "fingerprint": self.fingerprint,
            "couponId": self.coupon_id,
            "code": self.code,
            "storeId": self.store_id,
            "capturedAt": self.captured_at,
        }
        if self.amount_saved is not None:
            payload["amountSaved"] = self.amount_saved
        return payload


class EnqueueResult(str, Enum):
    ACCEPTED = "ACCEPTED"
    DUPLICATE = "DUPLICATE"


class AckStatus(str, Enum):
    ACCEPTED = "ACCEPTED"
    DUPLICATE = "DUPLICATE"
    INVALID_EVENT = "INVALID_EVENT"
    UNAVAILABLE = "UNAVAILABLE"  # local store failed; capture keeps running


@dataclass(frozen=True)
class Ack:
    """Typed response to a capture message."""

    status: AckStatus
    fingerprint: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in (AckStatus.ACCEPTED, AckStatus.DUPLICATE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.ok,
            "status": self.status.value,
            "fingerprint": self.fingerprint,
            "error": self.error,
        }


@dataclass
class SyncReport:
    """What one sync run did."""

    batches: int = 0
    sent: int = 0
    committed: int = 0
    already_committed: int = 0
    rejected: int = 0
    released: int = 0
    dead_lettered: int = 0
    purged: int = 0
    transient_failure: bool = False
    skipped_reason: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def acknowledged(self) -> int:
        return self.committed + self.already_committed

    def to_dict(self) -> dict[str, Any]:
        return {
            "batches": self.batches,
            "sent": self.sent,
            "committed": self.committed,
            "already_committed": self.already_committed,
            "rejected": self.rejected,
            "released": self.released,
            "dead_lettered": self.dead_lettered,
            "purged": self.purged,
            "transient_failure": self.transient_failure,
            "skipped_reason": self.skipped_reason,
            "errors": list(self.errors),
        }
