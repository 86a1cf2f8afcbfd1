"""
Durable store contract.

A store is the single source of truth for records. Every write is durable
before the call returns, and claiming is a compare-and-swap on `state` so
concurrent claimers never receive the same record.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Literal, Mapping, Optional, Sequence, Union

from ..errors import InvalidRecord
from ..models import Record, RecordState
from ..utils import from_epoch, generate_id, loads_payload, to_epoch

OnDuplicate = Literal["ignore", "update"]
Clock = Callable[[], float]
Instant = Union[datetime, float]
Duration = Union[timedelta, float]

TABLE = "relay_records"


def as_seconds(d: Duration) -> float:
    if isinstance(d, timedelta):
        return d.total_seconds()
    return float(d)


class RecordStore(ABC):
    """Synchronous, crash-safe record persistence.

    Mark operations return True when they applied a transition and False when
    the record is missing or already past the expected state, which makes
    repeated calls with the same target state harmless.
    """

    # True when several processes may claim from the same store concurrently.
    shared: bool = False

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock: Clock = clock or time.time

    def now(self) -> float:
        return self._clock()

    # ---------- producer API

    @abstractmethod
    def enqueue(
        self,
        payload: Any,
        record_id: Optional[str] = None,
        *,
        on_duplicate: OnDuplicate = "ignore",
    ) -> Record:
        """Persist a record as pending; a duplicate id never creates a second entry."""

    # ---------- dispatcher API

    @abstractmethod
    def claim_batch(self, max_count: int) -> list[Record]:
        """Move up to `max_count` due records to in_flight, oldest first."""

    @abstractmethod
    def mark_delivered(self, record_id: str, *, revision: Optional[int] = None) -> bool: ...

    @abstractmethod
    def mark_retry(self, record_id: str, next_attempt_at: Instant, error: Any) -> bool: ...

    @abstractmethod
    def mark_dead_letter(self, record_id: str, error: Any) -> bool: ...

    @abstractmethod
    def release(self, record_ids: Iterable[str]) -> int:
        """Return claimed records to pending without spending an attempt."""

    @abstractmethod
    def recover_stale_in_flight(self, older_than: Duration) -> int:
        """Revert in_flight records claimed at least `older_than` ago to pending."""

    # ---------- observability

    @abstractmethod
    def counts(self) -> dict[RecordState, int]: ...

    @abstractmethod
    def get(self, record_id: str) -> Optional[Record]: ...

    @abstractmethod
    def next_due_at(self) -> Optional[float]:
        """Earliest next_attempt_at (epoch seconds) among waiting records."""

    def pending_count(self) -> int:
        c = self.counts()
        return c[RecordState.PENDING] + c[RecordState.FAILED]

    def in_flight_count(self) -> int:
        return self.counts()[RecordState.IN_FLIGHT]

    def dead_letter_count(self) -> int:
        return self.counts()[RecordState.DEAD_LETTERED]

    # ---------- operator API

    @abstractmethod
    def list_dead_letters(self, limit: int = 100) -> list[Record]: ...

    @abstractmethod
    def purge_dead_letters(self, record_ids: Optional[Sequence[str]] = None) -> int: ...

    @abstractmethod
    def requeue_dead_letter(self, record_id: str) -> bool: ...

    @abstractmethod
    def collect_garbage(self, retention: Duration) -> int:
        """Delete delivered records whose delivery is older than `retention`."""

    @abstractmethod
    def close(self) -> None: ...

    def __enter__(self) -> "RecordStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---------- helpers shared by implementations

    @staticmethod
    def _resolve_id(record_id: Optional[str]) -> str:
        if record_id is None:
            return generate_id()
        if not isinstance(record_id, str) or not record_id.strip():
            raise InvalidRecord(f"record id must be a non-empty string, got {record_id!r}")
        return record_id

    @staticmethod
    def _empty_counts() -> dict[RecordState, int]:
        return {s: 0 for s in RecordState}

    def _decode_payload(self, raw: Any) -> Any:
        return loads_payload(raw)

    def _row_to_record(self, row: Mapping[str, Any]) -> Record:
        return Record(
            id=row["id"],
            payload=self._decode_payload(row["payload"]),
            state=RecordState(row["state"]),
            attempts=row["attempts"],
            retry_base=row["retry_base"],
            revision=row["revision"],
            created_at=from_epoch(row["created_at"]),
            updated_at=from_epoch(row["updated_at"]),
            next_attempt_at=from_epoch(row["next_attempt_at"]),
            claimed_at=from_epoch(row["claimed_at"]),
            delivered_at=from_epoch(row["delivered_at"]),
            last_error=row["last_error"],
        )

    @staticmethod
    def _instant(value: Instant) -> float:
        return to_epoch(value)
