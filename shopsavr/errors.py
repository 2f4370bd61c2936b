"""
Error taxonomy for the savings event pipeline.

InvalidEvent and TransientSyncFailure are raised and caught inside the
pipeline; rejection and dead-lettering are outcomes/states rather than
exceptions (see PerEventOutcome and SyncState).
"""

from __future__ import annotations


class SavingsPipelineError(RuntimeError):
    """Base class for pipeline errors."""


class InvalidEvent(SavingsPipelineError):
    """Capture message failed schema validation. Dropped at the bus, never queued."""

    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = fields or []


class TransientSyncFailure(SavingsPipelineError):
    """Backend unreachable or unable to answer for the whole batch.

    Events in the batch revert to Pending without an attempt penalty.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BatchRejected(SavingsPipelineError):
    """Backend refused the whole batch (4xx other than auth/throttling)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
