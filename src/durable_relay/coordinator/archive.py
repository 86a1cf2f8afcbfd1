"""
File-based dead-letter archive (NDJSON).

Purged dead letters are appended here before they leave the store, so an
operator purge never silently drops a record.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence, Union

from loguru import logger

from ..models import DeadLetter, Record, RecordState
from ..store.base import RecordStore


@dataclass
class ArchivedBatch:
    ts: float
    reason: str
    records: list[DeadLetter]
    metadata: dict[str, Any] = field(default_factory=dict)


class DeadLetterArchive:
    """Append-only NDJSON archive, one line per archived batch."""

    def __init__(self, path: Union[str, Path], *, mkdirs: bool = True) -> None:
        self.path = Path(path)
        if mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def save(
        self,
        records: Sequence[Record],
        reason: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        if not records:
            return
        line = json.dumps(
            {
                "ts": time.time(),
                "reason": reason,
                "records": [DeadLetter.from_record(r).model_dump(mode="json") for r in records],
                "metadata": metadata or {},
            },
            separators=(",", ":"),
        )
        async with self._lock:
            await asyncio.to_thread(self._append, line)
        logger.debug(f"Archived {len(records)} dead letter(s) to {self.path}")

    def _append(self, line: str) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    async def replay(self, max_records: int = 100) -> list[ArchivedBatch]:
        """Read up to `max_records` archived batches, oldest first."""
        if not self.path.exists():
            return []
        return await asyncio.to_thread(self._read, max_records)

    def _read(self, max_records: int) -> list[ArchivedBatch]:
        out: list[ArchivedBatch] = []
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                if len(out) >= max_records:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping corrupt archive line in {self.path}")
                    continue
                out.append(
                    ArchivedBatch(
                        ts=raw["ts"],
                        reason=raw["reason"],
                        records=[DeadLetter.model_validate(r) for r in raw["records"]],
                        metadata=raw.get("metadata", {}),
                    )
                )
        return out


async def purge_into_archive(
    store: RecordStore,
    record_ids: Optional[Sequence[str]],
    archive: DeadLetterArchive,
    *,
    metadata: Optional[dict[str, Any]] = None,
) -> int:
    """Archive dead letters (all, or the given ids), then delete exactly those."""
    if record_ids is None:
        doomed = await asyncio.to_thread(store.list_dead_letters, 2**31 - 1)
    else:
        found = await asyncio.gather(*(asyncio.to_thread(store.get, rid) for rid in record_ids))
        doomed = [r for r in found if r is not None and r.state == RecordState.DEAD_LETTERED]
    await archive.save(doomed, reason="purge", metadata=metadata)
    return await asyncio.to_thread(store.purge_dead_letters, [r.id for r in doomed])
