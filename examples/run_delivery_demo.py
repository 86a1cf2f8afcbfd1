"""
Demo script for DeliveryQueue.

Shows an outage (breaker opens, records wait with no attempts burned), a
terminal rejection going to dead letters, and recovery once the sink is back.
"""

import asyncio
import random
import tempfile
from pathlib import Path

from loguru import logger

from durable_relay import DeliveryQueue, SqliteRecordStore
from durable_relay.coordinator import (
    BacklogEvent,
    CircuitBreaker,
    FeedbackBus,
    RetryPolicy,
)
from durable_relay.errors import RetryableSinkError, TerminalSinkError
from durable_relay.models import Record


class FlakySink:
    """Sink that is down until `healthy` is set and rejects odd payloads."""

    def __init__(self):
        self.healthy = False
        self.received = 0

    async def submit(self, record: Record) -> None:
        await asyncio.sleep(random.uniform(0.001, 0.01))
        if not self.healthy:
            raise RetryableSinkError("503 Service Unavailable")
        if record.payload.get("malformed"):
            raise TerminalSinkError("422 missing field 'reading'")
        self.received += 1


async def on_backlog(event: BacklogEvent):
    logger.info(
        f"backlog: pending={event.pending} dead={event.dead_letters} "
        f"circuit={event.circuit_state} level={event.level.value}"
    )


async def main():
    bus = FeedbackBus()
    bus.subscribe(on_backlog)
    sink = FlakySink()

    with tempfile.TemporaryDirectory() as tmp:
        store = SqliteRecordStore(Path(tmp) / "demo.db")
        async with DeliveryQueue(
            store,
            sink,
            retry_policy=RetryPolicy(initial_backoff_ms=100, max_backoff_ms=500),
            circuit_breaker=CircuitBreaker(failure_threshold=3, half_open_after_sec=1.0),
            batch_size=10,
            tick_interval_sec=0.5,
            feedback=bus,
        ) as queue:
            logger.info("Producing 30 records while the sink is down")
            for i in range(30):
                payload = {"reading": i} if i != 7 else {"malformed": True}
                queue.enqueue(payload, record_id=f"sensor-1:{i:04d}")

            await asyncio.sleep(1.5)
            logger.info(f"During outage: {queue.health()}")

            logger.info("Sink back online")
            sink.healthy = True
            await asyncio.sleep(3.0)

            h = queue.health()
            logger.info(
                f"Final: delivered={sink.received} pending={h.pending} dead={h.dead_letters}"
            )
            for dl in queue.list_dead_letters():
                logger.warning(f"dead letter {dl.id}: {dl.last_error}")
        store.close()

    logger.info("Delivery demo complete")


if __name__ == "__main__":
    asyncio.run(main())
