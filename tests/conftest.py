"""
Pytest configuration and fixtures for durable-relay.

Provides cross-platform event loop configuration, a controllable clock,
throwaway SQLite stores and scripted sink clients.
"""

import asyncio
import sys
from typing import Optional, Sequence

import pytest

from durable_relay.coordinator.feedback import FeedbackBus
from durable_relay.errors import RetryableSinkError
from durable_relay.models import Record
from durable_relay.store import SqliteRecordStore

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink:
    """Sink that records every submission and follows a per-id script.

    `script[id]` is a list of exceptions (or None for success) consumed one
    per attempt; once exhausted, attempts succeed.
    """

    def __init__(self, script: Optional[dict] = None, delay: float = 0.0):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.submissions: list[str] = []
        self.delivered: list[str] = []

    async def submit(self, record: Record) -> None:
        self.submissions.append(record.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)
        steps = self.script.get(record.id)
        if steps:
            outcome = steps.pop(0)
            if outcome is not None:
                raise outcome
        self.delivered.append(record.id)


class DownSink:
    """Sink whose remote end is unreachable."""

    def __init__(self):
        self.calls = 0

    async def submit(self, record: Record) -> None:
        self.calls += 1
        raise RetryableSinkError("connection refused")


class BulkSink(RecordingSink):
    """RecordingSink that also accepts batches."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.batches: list[list[str]] = []

    async def submit_batch(self, records: Sequence[Record]):
        self.batches.append([r.id for r in records])
        out = {}
        for r in records:
            try:
                await self.submit(r)
            except Exception as exc:
                out[r.id] = exc
            else:
                out[r.id] = None
        return out


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "queue.db"


@pytest.fixture
def store(db_path, clock):
    s = SqliteRecordStore(db_path, clock=clock)
    yield s
    s.close()


@pytest.fixture
def bus():
    """Private bus so tests do not leak subscribers into the singleton."""
    return FeedbackBus()
