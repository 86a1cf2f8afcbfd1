"""
DeliveryQueue: producer-facing facade over store, dispatcher and monitor.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from loguru import logger

from ..metrics.registry import metrics_registry
from ..models import Record, RecordState
from ..store.base import Duration, OnDuplicate, RecordStore
from .archive import DeadLetterArchive, purge_into_archive
from .connectivity import ConnectivityMonitor, HttpReachabilityProbe, Reachability
from .dispatcher import Dispatcher
from .feedback import FeedbackBus
from .policy import CircuitBreaker, CircuitState, RetryPolicy
from .settings import RelayRuntimeSettings, get_settings
from .types import CycleReport, SinkClient


@dataclass(frozen=True)
class DeliveryHealth:
    queue_id: str
    running: bool
    pending: int
    in_flight: int
    dead_letters: int
    circuit_state: CircuitState
    connectivity: Reachability
    last_delivery_at: Optional[float]


class DeliveryQueue:
    """Durable at-least-once queue in front of a sink client.

    `enqueue` only touches the store, so producers keep working while the sink
    is down; the dispatcher drains in the background once started.
    """

    def __init__(
        self,
        store: RecordStore,
        sink: SinkClient,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        monitor: Optional[ConnectivityMonitor] = None,
        batch_size: int = 20,
        workers: int = 2,
        attempt_timeout_sec: float = 10.0,
        tick_interval_sec: float = 30.0,
        maintenance_interval_sec: float = 60.0,
        stale_after_sec: float = 300.0,
        delivered_retention_sec: float = 86_400.0,
        shutdown_grace_sec: float = 10.0,
        use_bulk: bool = False,
        queue_id: str = "default",
        feedback: Optional[FeedbackBus] = None,
        backlog_high_watermark: int = 1000,
        backlog_low_watermark: int = 500,
        close_store: bool = False,
        metrics_port: Optional[int] = None,
        exclusive: Optional[bool] = None,
    ) -> None:
        self._store = store
        self._metrics_port = metrics_port
        self._monitor = monitor or ConnectivityMonitor(name=queue_id)
        self._grace = shutdown_grace_sec
        self._close_store = close_store
        self.queue_id = queue_id
        self._dispatcher = Dispatcher(
            store,
            sink,
            retry_policy=retry_policy,
            circuit_breaker=circuit_breaker,
            batch_size=batch_size,
            workers=workers,
            attempt_timeout_sec=attempt_timeout_sec,
            tick_interval_sec=tick_interval_sec,
            maintenance_interval_sec=maintenance_interval_sec,
            stale_after_sec=stale_after_sec,
            delivered_retention_sec=delivered_retention_sec,
            use_bulk=use_bulk,
            queue_id=queue_id,
            feedback=feedback,
            backlog_high_watermark=backlog_high_watermark,
            backlog_low_watermark=backlog_low_watermark,
            exclusive=exclusive,
        )

    @classmethod
    def from_settings(
        cls,
        sink: SinkClient,
        settings: Optional[RelayRuntimeSettings] = None,
        *,
        store: Optional[RecordStore] = None,
        feedback: Optional[FeedbackBus] = None,
        exclusive: Optional[bool] = None,
    ) -> "DeliveryQueue":
        if settings is None:
            settings = get_settings()
        probe = (
            HttpReachabilityProbe(settings.connectivity_url) if settings.connectivity_url else None
        )
        return cls(
            store if store is not None else settings.open_store(),
            sink,
            retry_policy=settings.retry_policy(),
            circuit_breaker=settings.circuit_breaker(),
            monitor=ConnectivityMonitor(
                probe, interval_sec=settings.connectivity_interval_sec, name=settings.queue_id
            ),
            batch_size=settings.batch_size,
            workers=settings.workers,
            attempt_timeout_sec=settings.attempt_timeout_sec,
            tick_interval_sec=settings.tick_interval_sec,
            maintenance_interval_sec=settings.maintenance_interval_sec,
            stale_after_sec=settings.stale_after_sec,
            delivered_retention_sec=settings.delivered_retention_sec,
            shutdown_grace_sec=settings.shutdown_grace_sec,
            use_bulk=settings.use_bulk,
            queue_id=settings.queue_id,
            feedback=feedback,
            backlog_high_watermark=settings.backlog_high_watermark,
            backlog_low_watermark=settings.backlog_low_watermark,
            close_store=store is None,
            metrics_port=settings.metrics_port,
            exclusive=exclusive,
        )

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def monitor(self) -> ConnectivityMonitor:
        return self._monitor

    # ---------- lifecycle

    async def start(self) -> None:
        if self._metrics_port is not None:
            metrics_registry.serve(self._metrics_port)
        self._monitor.subscribe(self._on_online)
        self._monitor.start()
        await self._dispatcher.start()

    async def stop(self, grace_period: Optional[float] = None) -> None:
        self._monitor.unsubscribe(self._on_online)
        await self._monitor.stop()
        await self._dispatcher.stop(self._grace if grace_period is None else grace_period)
        if self._close_store:
            self._store.close()

    async def __aenter__(self) -> "DeliveryQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _on_online(self) -> None:
        logger.info(f"Queue '{self.queue_id}': sink reachable again, waking dispatcher")
        self._dispatcher.notify()

    # ---------- producer API

    def enqueue(
        self,
        payload: Any,
        record_id: Optional[str] = None,
        *,
        on_duplicate: OnDuplicate = "ignore",
    ) -> Record:
        """Persist a record and nudge the dispatcher. Raises StoreUnavailable."""
        record = self._store.enqueue(payload, record_id, on_duplicate=on_duplicate)
        self._dispatcher.notify()
        return record

    async def aenqueue(
        self,
        payload: Any,
        record_id: Optional[str] = None,
        *,
        on_duplicate: OnDuplicate = "ignore",
    ) -> Record:
        return await asyncio.to_thread(
            self.enqueue, payload, record_id, on_duplicate=on_duplicate
        )

    # ---------- observability

    def health(self) -> DeliveryHealth:
        counts = self._store.counts()
        return DeliveryHealth(
            queue_id=self.queue_id,
            running=self._dispatcher.running,
            pending=counts[RecordState.PENDING] + counts[RecordState.FAILED],
            in_flight=counts[RecordState.IN_FLIGHT],
            dead_letters=counts[RecordState.DEAD_LETTERED],
            circuit_state=self._dispatcher.breaker.state,
            connectivity=self._monitor.status,
            last_delivery_at=self._dispatcher.last_delivery_at,
        )

    # ---------- operator API

    async def force_sync_now(self) -> CycleReport:
        """Run one dispatch cycle now, even if the monitor says offline."""
        return await self._dispatcher.force_sync_now()

    def list_dead_letters(self, limit: int = 100) -> list[Record]:
        return self._store.list_dead_letters(limit)

    async def purge_dead_letters(
        self,
        record_ids: Optional[Sequence[str]] = None,
        *,
        archive: Optional[DeadLetterArchive] = None,
    ) -> int:
        """Delete dead letters (all, or the given ids), archiving them first if asked."""
        if archive is None:
            purged = await asyncio.to_thread(self._store.purge_dead_letters, record_ids)
        else:
            purged = await purge_into_archive(
                self._store, record_ids, archive, metadata={"queue_id": self.queue_id}
            )
        logger.info(f"Queue '{self.queue_id}': purged {purged} dead letter(s)")
        return purged

    async def requeue_dead_letter(self, record_id: str) -> bool:
        ok = await asyncio.to_thread(self._store.requeue_dead_letter, record_id)
        if ok:
            self._dispatcher.notify()
        return ok

    async def collect_garbage(self, retention: Optional[Duration] = None) -> int:
        keep = self._dispatcher.delivered_retention_sec if retention is None else retention
        removed = await asyncio.to_thread(self._store.collect_garbage, keep)
        if removed:
            logger.info(f"Queue '{self.queue_id}': removed {removed} delivered record(s)")
        return removed
