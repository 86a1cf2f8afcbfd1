"""
Durable Relay

At-least-once delivery of locally produced records to a remote sink, with
crash-safe persistence (SQLite or PostgreSQL), retry with backoff, a circuit
breaker and dead-letter handling.

Usage:
    from durable_relay import DeliveryQueue, SqliteRecordStore
    from durable_relay.sinks import HttpSinkClient

    store = SqliteRecordStore("queue.db")
    async with HttpSinkClient("https://collector/ingest") as sink:
        async with DeliveryQueue(store, sink) as queue:
            queue.enqueue({"reading": 42}, record_id="sensor-1:0001")
"""

from .coordinator import (
    CircuitBreaker,
    ConnectivityMonitor,
    DeadLetterArchive,
    DeliveryHealth,
    DeliveryQueue,
    Dispatcher,
    RelayRuntimeSettings,
    RetryPolicy,
    SinkClient,
)
from .errors import (
    CircuitOpenError,
    InvalidRecord,
    RelayError,
    RetryableSinkError,
    SinkError,
    StoreUnavailable,
    TerminalSinkError,
)
from .models import DeadLetter, Record, RecordState
from .store import PostgresRecordStore, RecordStore, SqliteRecordStore

__version__ = "0.1.0"
__all__ = [
    "DeliveryQueue",
    "DeliveryHealth",
    "Dispatcher",
    "RetryPolicy",
    "CircuitBreaker",
    "ConnectivityMonitor",
    "DeadLetterArchive",
    "RelayRuntimeSettings",
    "SinkClient",
    "RecordStore",
    "SqliteRecordStore",
    "PostgresRecordStore",
    "Record",
    "RecordState",
    "DeadLetter",
    "RelayError",
    "StoreUnavailable",
    "InvalidRecord",
    "SinkError",
    "RetryableSinkError",
    "TerminalSinkError",
    "CircuitOpenError",
]
