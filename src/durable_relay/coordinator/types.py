from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Sequence, runtime_checkable

from ..models import Record

# Outcome per record id from a bulk submission; None means delivered.
BatchOutcome = Mapping[str, Optional[BaseException]]


@runtime_checkable
class SinkClient(Protocol):
    """Remote call that delivers one record.

    Return normally on success. Raise RetryableSinkError or TerminalSinkError
    to state the outcome explicitly; any other exception is classified by the
    RetryPolicy. Sinks must tolerate duplicates, keyed by `record.id`.
    """

    async def submit(self, record: Record) -> None: ...


@runtime_checkable
class BulkSinkClient(SinkClient, Protocol):
    """Sink that can also deliver several records in one call."""

    async def submit_batch(self, records: Sequence[Record]) -> BatchOutcome: ...


@dataclass
class CycleReport:
    """What one dispatcher cycle did."""

    claimed: int = 0
    delivered: int = 0
    retried: int = 0
    dead_lettered: int = 0
    released: int = 0
    skipped: Optional[str] = None  # "circuit_open", "stopping", "store_unavailable"
    pending: int = 0
    dead_letters: int = 0

    @property
    def submitted(self) -> int:
        return self.delivered + self.retried + self.dead_lettered
