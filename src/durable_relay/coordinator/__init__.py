"""Delivery coordinator

Durable store -> dispatcher -> sink pipeline with:
- RetryPolicy with exponential backoff and jitter
- CircuitBreaker with single-probe half-open
- ConnectivityMonitor (online edge wakes the dispatcher)
- Dispatcher with bounded parallel delivery and crash recovery
- DeliveryQueue facade & health checks
- Backlog feedback events
- Dead-letter archive (file-based NDJSON)
- Environment-based settings
"""

from .types import SinkClient, BulkSinkClient, BatchOutcome, CycleReport
from .policy import (
    RetryPolicy,
    ErrorClass,
    default_error_classifier,
    CircuitBreaker,
)
from .connectivity import ConnectivityMonitor, HttpReachabilityProbe, Reachability
from .feedback import BacklogEvent, BacklogLevel, FeedbackBus, feedback_bus
from .dispatcher import Dispatcher
from .delivery_queue import DeliveryQueue, DeliveryHealth
from .settings import RelayRuntimeSettings, get_settings
from .archive import DeadLetterArchive, ArchivedBatch

__all__ = [
    # types
    "SinkClient",
    "BulkSinkClient",
    "BatchOutcome",
    "CycleReport",
    "DeliveryHealth",
    "ArchivedBatch",
    # policies
    "RetryPolicy",
    "ErrorClass",
    "default_error_classifier",
    "CircuitBreaker",
    # connectivity
    "ConnectivityMonitor",
    "HttpReachabilityProbe",
    "Reachability",
    # feedback
    "BacklogEvent",
    "BacklogLevel",
    "FeedbackBus",
    "feedback_bus",
    # runtime
    "Dispatcher",
    "DeliveryQueue",
    "RelayRuntimeSettings",
    "get_settings",
    # tooling
    "DeadLetterArchive",
]
