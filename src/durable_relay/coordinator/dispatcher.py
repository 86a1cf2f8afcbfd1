"""
Delivery dispatcher.

Drains the durable store into a sink client. One cycle runs at a time; inside
a cycle, claimed records are submitted with bounded parallelism. Outcomes are
written back to the store before the next cycle is considered.

Crash semantics: a record claimed but not yet marked stays in_flight and is
reverted to pending by the next startup's recovery pass, so it may be
delivered twice but never zero times.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional, Sequence

from loguru import logger

from ..errors import CircuitOpenError, RetryableSinkError, StoreUnavailable
from ..metrics.registry import metrics_registry as M
from ..models import Record, RecordState
from ..store.base import RecordStore
from .feedback import BacklogEvent, FeedbackBus, backlog_level, feedback_bus
from .policy import CircuitBreaker, ErrorClass, RetryPolicy
from .types import BulkSinkClient, CycleReport, SinkClient

_MISSING = object()


class Dispatcher:
    """Claims due records and delivers them under retry policy and breaker."""

    def __init__(
        self,
        store: RecordStore,
        sink: SinkClient,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        batch_size: int = 20,
        workers: int = 2,
        attempt_timeout_sec: float = 10.0,
        tick_interval_sec: float = 30.0,
        maintenance_interval_sec: float = 60.0,
        stale_after_sec: float = 300.0,
        delivered_retention_sec: float = 86_400.0,
        use_bulk: bool = False,
        queue_id: str = "default",
        feedback: Optional[FeedbackBus] = None,
        backlog_high_watermark: int = 1000,
        backlog_low_watermark: int = 500,
        exclusive: Optional[bool] = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if workers <= 0:
            raise ValueError("workers must be > 0")
        if attempt_timeout_sec <= 0:
            raise ValueError("attempt_timeout_sec must be > 0")

        self._store = store
        self._sink = sink
        self._policy = retry_policy or RetryPolicy()
        self._breaker = circuit_breaker or CircuitBreaker()
        self.batch_size = batch_size
        self.workers = workers
        self.attempt_timeout_sec = attempt_timeout_sec
        self.tick_interval_sec = tick_interval_sec
        self.maintenance_interval_sec = maintenance_interval_sec
        self.stale_after_sec = stale_after_sec
        self.delivered_retention_sec = delivered_retention_sec
        self.use_bulk = use_bulk and isinstance(sink, BulkSinkClient)
        self.queue_id = queue_id
        self._feedback = feedback if feedback is not None else feedback_bus()
        self._high_wm = backlog_high_watermark
        self._low_wm = backlog_low_watermark
        # sole claimant of the store: startup recovery may revert every in-flight record
        self.exclusive = (not store.shared) if exclusive is None else exclusive

        worst_cycle = -(-batch_size // workers) * attempt_timeout_sec
        if worst_cycle >= stale_after_sec:
            logger.warning(
                f"Dispatcher '{queue_id}': a full cycle may take {worst_cycle:.0f}s, which is "
                f"not below stale_after_sec={stale_after_sec:.0f}s; live claims could be recovered"
            )

        self._recovered = False
        self._cycle_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._last_maintenance = time.monotonic()
        self._last_delivery_at: Optional[float] = None

    # ---------- properties

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_delivery_at(self) -> Optional[float]:
        return self._last_delivery_at

    # ---------- lifecycle

    async def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name=f"dispatcher-{self.queue_id}")
        logger.info(
            f"Dispatcher '{self.queue_id}' started (batch={self.batch_size}, "
            f"workers={self.workers}, bulk={self.use_bulk})"
        )

    async def stop(self, grace_period: float = 10.0) -> None:
        """Stop claiming, wait for in-flight submissions, then abandon them.

        Abandoned records stay in_flight; the next startup recovers them.
        """
        if self._task is None:
            return
        self._stopping.set()
        self._wake.set()
        done, _ = await asyncio.wait({self._task}, timeout=grace_period)
        if not done:
            logger.warning(
                f"Dispatcher '{self.queue_id}' did not finish within {grace_period:.1f}s; "
                "abandoning in-flight deliveries"
            )
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info(f"Dispatcher '{self.queue_id}' stopped")

    def notify(self) -> None:
        """Wake the loop early. Safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is loop:
            self._wake.set()
        else:
            loop.call_soon_threadsafe(self._wake.set)

    async def force_sync_now(self) -> CycleReport:
        """Run one cycle immediately (waits for a cycle already in progress)."""
        return await self.run_cycle()

    # ---------- loop

    async def _run(self) -> None:
        while not self._stopping.is_set():
            self._wake.clear()
            try:
                report = await self.run_cycle()
            except Exception:
                logger.exception(f"Dispatcher '{self.queue_id}' cycle failed")
                report = CycleReport(skipped="error")
            try:
                await self._maybe_maintain()
            except StoreUnavailable as exc:
                logger.error(f"Dispatcher '{self.queue_id}': maintenance skipped: {exc}")
            if self._stopping.is_set():
                break
            # A full, fully-submitted batch means more records may already be due.
            if report.skipped is None and report.claimed >= self.batch_size and not report.released:
                continue
            timeout = await self._idle_timeout()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    async def _idle_timeout(self) -> float:
        timeout = self.tick_interval_sec
        if self._breaker.is_open():
            # Due records cannot go out before the breaker half-opens.
            return max(min(timeout, self._breaker.seconds_until_half_open()), 0.05)
        try:
            due = await asyncio.to_thread(self._store.next_due_at)
        except StoreUnavailable:
            return timeout
        if due is not None:
            timeout = min(timeout, max(due - self._store.now(), 0.0))
        # keep a floor so a record due "now" but refused by the breaker cannot spin the loop
        return max(timeout, 0.05)

    async def _maybe_maintain(self) -> None:
        now = time.monotonic()
        if now - self._last_maintenance < self.maintenance_interval_sec:
            return
        self._last_maintenance = now
        await self.maintain()

    async def maintain(self) -> tuple[int, int]:
        """Recover stale claims and garbage-collect old deliveries."""
        recovered = await asyncio.to_thread(
            self._store.recover_stale_in_flight, self.stale_after_sec
        )
        removed = await asyncio.to_thread(
            self._store.collect_garbage, self.delivered_retention_sec
        )
        return recovered, removed

    # ---------- cycle

    async def run_cycle(self) -> CycleReport:
        async with self._cycle_lock:
            return await self._cycle()

    async def _cycle(self) -> CycleReport:
        report = CycleReport()
        try:
            await self._ensure_recovered()
            if self._breaker.is_open():
                report.skipped = "circuit_open"
                logger.debug(f"Dispatcher '{self.queue_id}': circuit open, skipping cycle")
            elif self._stopping.is_set():
                report.skipped = "stopping"
            else:
                batch = await asyncio.to_thread(self._store.claim_batch, self.batch_size)
                report.claimed = len(batch)
                if batch:
                    if self.use_bulk:
                        await self._deliver_bulk(batch, report)
                    else:
                        await self._deliver_each(batch, report)
            await self._publish(report)
        except StoreUnavailable as exc:
            report.skipped = "store_unavailable"
            M.cycles_total.labels(queue=self.queue_id, result="store_unavailable").inc()
            logger.error(f"Dispatcher '{self.queue_id}': store unavailable: {exc}")
            return report

        result = report.skipped or ("ran" if report.claimed else "empty")
        M.cycles_total.labels(queue=self.queue_id, result=result).inc()
        if report.claimed:
            logger.info(
                f"Dispatcher '{self.queue_id}' cycle: claimed={report.claimed} "
                f"delivered={report.delivered} retried={report.retried} "
                f"dead_lettered={report.dead_lettered} released={report.released} "
                f"pending={report.pending}"
            )
        return report

    async def _ensure_recovered(self) -> None:
        if self._recovered:
            return
        # Without other claimants there are no live claims before our first one.
        older_than = 0.0 if self.exclusive else self.stale_after_sec
        recovered = await asyncio.to_thread(self._store.recover_stale_in_flight, older_than)
        self._recovered = True
        if recovered:
            logger.warning(
                f"Dispatcher '{self.queue_id}': reverted {recovered} in-flight record(s) "
                "left by a previous run"
            )

    async def _deliver_each(self, batch: Sequence[Record], report: CycleReport) -> None:
        sem = asyncio.Semaphore(self.workers)

        async def run(record: Record) -> None:
            async with sem:
                await self._deliver_one(record, report)

        results = await asyncio.gather(*(run(r) for r in batch), return_exceptions=True)
        for res in results:
            if isinstance(res, BaseException):
                # Unmarked records stay in_flight until stale recovery.
                raise res

    async def _deliver_one(self, record: Record, report: CycleReport) -> None:
        if self._stopping.is_set():
            await self._release([record], report)
            return
        try:
            await self._breaker.allow()
        except CircuitOpenError as exc:
            logger.debug(f"Record {record.id} released: {exc}")
            await self._release([record], report)
            return

        try:
            error = await self._submit(record)
            healthy = await self._settle(record, error, report)
        except asyncio.CancelledError:
            self._breaker.abandon_probe()
            raise
        except Exception:
            # No outcome was recorded; the record stays in_flight until stale recovery.
            await self._breaker.on_failure()
            raise
        if healthy:
            await self._breaker.on_success()
        else:
            await self._breaker.on_failure()

    async def _submit(self, record: Record) -> Optional[BaseException]:
        started = time.perf_counter()
        try:
            await asyncio.wait_for(self._sink.submit(record), timeout=self.attempt_timeout_sec)
        except asyncio.TimeoutError:
            error: Optional[BaseException] = RetryableSinkError(
                f"attempt timed out after {self.attempt_timeout_sec:.1f}s"
            )
        except Exception as exc:
            error = exc
        else:
            error = None
        M.submit_latency_seconds.labels(queue=self.queue_id).observe(
            time.perf_counter() - started
        )
        return error

    async def _deliver_bulk(self, batch: Sequence[Record], report: CycleReport) -> None:
        try:
            await self._breaker.allow()
        except CircuitOpenError as exc:
            logger.debug(f"Bulk batch of {len(batch)} released: {exc}")
            await self._release(batch, report)
            return

        to_send = list(batch)
        if self._breaker.state == "half_open":
            # Only a single record goes out as the probe.
            await self._release(to_send[1:], report)
            to_send = to_send[:1]

        try:
            outcomes = await self._submit_bulk(to_send)
            any_healthy = False
            for record in to_send:
                error = outcomes.get(record.id, _MISSING)
                if error is _MISSING:
                    error = RetryableSinkError("sink reported no outcome for record")
                if await self._settle(record, error, report):
                    any_healthy = True
        except asyncio.CancelledError:
            self._breaker.abandon_probe()
            raise
        except Exception:
            await self._breaker.on_failure()
            raise
        if any_healthy:
            await self._breaker.on_success()
        else:
            await self._breaker.on_failure()

    async def _submit_bulk(self, records: Sequence[Record]) -> dict:
        started = time.perf_counter()
        try:
            outcomes = await asyncio.wait_for(
                self._sink.submit_batch(records), timeout=self.attempt_timeout_sec
            )
        except asyncio.TimeoutError:
            err = RetryableSinkError(
                f"bulk attempt timed out after {self.attempt_timeout_sec:.1f}s"
            )
            outcomes = {r.id: err for r in records}
        except Exception as exc:
            outcomes = {r.id: exc for r in records}
        M.submit_latency_seconds.labels(queue=self.queue_id).observe(
            time.perf_counter() - started
        )
        return outcomes

    async def _settle(
        self, record: Record, error: Optional[BaseException], report: CycleReport
    ) -> bool:
        """Write one attempt's outcome to the store.

        Returns True when the sink answered (success or terminal rejection),
        which counts as healthy for the breaker.
        """
        if error is None:
            applied = await asyncio.to_thread(
                self._store.mark_delivered, record.id, revision=record.revision
            )
            if not applied:
                # superseded by a newer payload (requeued) or settled elsewhere
                logger.debug(f"Record {record.id} accepted by sink but not marked delivered")
                return True
            report.delivered += 1
            self._last_delivery_at = self._store.now()
            M.deliveries_total.labels(queue=self.queue_id, outcome="delivered").inc()
            M.last_delivery_timestamp.labels(queue=self.queue_id).set(self._last_delivery_at)
            logger.debug(f"Record {record.id} delivered (attempt {record.attempts + 1})")
            return True

        verdict = self._policy.classify(error)
        budget_used = record.budget_used + 1
        if verdict == ErrorClass.TERMINAL:
            await asyncio.to_thread(self._store.mark_dead_letter, record.id, error)
            report.dead_lettered += 1
            M.deliveries_total.labels(queue=self.queue_id, outcome="dead_lettered").inc()
            logger.error(f"Record {record.id} dead-lettered (terminal): {error}")
            return True

        if self._policy.exhausted(budget_used):
            await asyncio.to_thread(self._store.mark_dead_letter, record.id, error)
            report.dead_lettered += 1
            M.deliveries_total.labels(queue=self.queue_id, outcome="dead_lettered").inc()
            logger.error(
                f"Record {record.id} dead-lettered after {budget_used} attempts: {error}"
            )
            return False

        delay = self._policy.next_delay(budget_used)
        await asyncio.to_thread(
            self._store.mark_retry, record.id, self._store.now() + delay, error
        )
        report.retried += 1
        M.deliveries_total.labels(queue=self.queue_id, outcome="retried").inc()
        logger.warning(
            f"Record {record.id} failed (attempt {budget_used}/{self._policy.max_attempts}), "
            f"retry in {delay:.2f}s: {error}"
        )
        return False

    async def _release(self, records: Sequence[Record], report: CycleReport) -> None:
        if not records:
            return
        released = await asyncio.to_thread(self._store.release, [r.id for r in records])
        report.released += released
        M.deliveries_total.labels(queue=self.queue_id, outcome="released").inc(released)

    async def _publish(self, report: CycleReport) -> None:
        counts = await asyncio.to_thread(self._store.counts)
        pending = counts[RecordState.PENDING] + counts[RecordState.FAILED]
        dead = counts[RecordState.DEAD_LETTERED]
        report.pending = pending
        report.dead_letters = dead

        state = self._breaker.state
        M.pending_records.labels(queue=self.queue_id).set(pending)
        M.in_flight_records.labels(queue=self.queue_id).set(counts[RecordState.IN_FLIGHT])
        M.dead_letter_records.labels(queue=self.queue_id).set(dead)
        M.set_circuit_state(self.queue_id, state)

        reason = report.skipped or ("drained" if pending == 0 else None)
        await self._feedback.publish(
            BacklogEvent(
                queue_id=self.queue_id,
                pending=pending,
                dead_letters=dead,
                circuit_state=state,
                level=backlog_level(pending, self._high_wm, self._low_wm),
                reason=reason,
            )
        )
