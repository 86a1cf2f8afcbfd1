"""
Pydantic data models for durable-relay.

A Record is the unit of delivery. Its payload is opaque to the relay.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, field_validator


class RecordState(str, Enum):
    """Lifecycle state of a record."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    FAILED = "failed"  # retryable failure, waiting out its backoff
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_terminal(self) -> bool:
        return self in (RecordState.DELIVERED, RecordState.DEAD_LETTERED)

    @property
    def is_waiting(self) -> bool:
        """Pending from the producer's point of view (claimable once due)."""
        return self in (RecordState.PENDING, RecordState.FAILED)


class Record(BaseModel):
    """A queued unit of work with a stable identity."""

    id: str
    payload: Any = None
    state: RecordState = RecordState.PENDING
    attempts: int = 0
    retry_base: int = 0
    revision: int = 1
    created_at: datetime
    updated_at: datetime
    next_attempt_at: datetime
    claimed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @field_validator("id")
    @classmethod
    def _non_empty_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("record id must be a non-empty string")
        return v

    @property
    def budget_used(self) -> int:
        """Attempts counted against the retry budget since the last requeue."""
        return self.attempts - self.retry_base


class DeadLetter(BaseModel):
    """Operator view of a dead-lettered record."""

    id: str
    payload: Any = None
    attempts: int
    created_at: datetime
    failed_at: datetime
    last_error: Optional[str] = None

    @classmethod
    def from_record(cls, record: Record) -> "DeadLetter":
        return cls(
            id=record.id,
            payload=record.payload,
            attempts=record.attempts,
            created_at=record.created_at,
            failed_at=record.updated_at,
            last_error=record.last_error,
        )
