"""
Unit tests for Dispatcher delivery semantics.
"""

import asyncio

import pytest
from prometheus_client import REGISTRY

from durable_relay.coordinator import CircuitBreaker, Dispatcher, RetryPolicy
from durable_relay.errors import RetryableSinkError, StoreUnavailable, TerminalSinkError
from durable_relay.models import RecordState
from durable_relay.store import SqliteRecordStore

from tests.conftest import BulkSink, DownSink, RecordingSink


class Tick:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


def make_dispatcher(store, sink, bus, *, tick=None, threshold=5, max_attempts=6, **kwargs):
    return Dispatcher(
        store,
        sink,
        retry_policy=RetryPolicy(max_attempts=max_attempts, jitter=False),
        circuit_breaker=CircuitBreaker(
            failure_threshold=threshold, half_open_after_sec=30, clock=tick or Tick()
        ),
        feedback=bus,
        **kwargs,
    )


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_terminal_rejection_is_isolated(store, bus):
    """A terminal rejection dead-letters one record; the others still deliver."""
    for rid in ("A", "B", "C"):
        store.enqueue({"id": rid}, rid)
    sink = RecordingSink({"B": [TerminalSinkError("schema violation")]})
    d = make_dispatcher(store, sink, bus)

    report = await d.run_cycle()

    assert report.claimed == 3
    assert report.delivered == 2
    assert report.dead_lettered == 1
    assert store.get("A").state == RecordState.DELIVERED
    assert store.get("C").state == RecordState.DELIVERED
    assert store.get("B").state == RecordState.DEAD_LETTERED
    assert store.pending_count() == 0
    assert store.dead_letter_count() == 1


@pytest.mark.asyncio
async def test_n_failures_then_success(store, clock, bus):
    """N retryable failures then success takes exactly N+1 submissions."""
    store.enqueue({}, "a")
    sink = RecordingSink({"a": [RetryableSinkError("503")] * 3})
    d = make_dispatcher(store, sink, bus)

    for expected_attempts in (1, 2, 3):
        report = await d.run_cycle()
        assert report.retried == 1
        rec = store.get("a")
        assert rec.state == RecordState.FAILED
        assert rec.attempts == expected_attempts
        # not due until its backoff elapses
        assert (await d.run_cycle()).claimed == 0
        clock.advance(120)

    report = await d.run_cycle()
    assert report.delivered == 1
    assert sink.submissions == ["a"] * 4
    rec = store.get("a")
    assert rec.state == RecordState.DELIVERED
    assert rec.attempts == 4
    assert d.last_delivery_at == clock.now


@pytest.mark.asyncio
async def test_backoff_schedule_is_written_to_store(store, clock, bus):
    store.enqueue({}, "a")
    d = make_dispatcher(store, DownSink(), bus)
    start = clock.now

    await d.run_cycle()
    assert store.get("a").next_attempt_at.timestamp() == pytest.approx(start + 0.5)
    clock.advance(1)
    await d.run_cycle()
    assert store.get("a").next_attempt_at.timestamp() == pytest.approx(start + 1 + 1.0)


@pytest.mark.asyncio
async def test_terminal_on_first_attempt(store, bus):
    """A terminal error on attempt 1 dead-letters with attempts == 1."""
    store.enqueue({}, "a")
    sink = RecordingSink({"a": [TerminalSinkError("422")]})
    d = make_dispatcher(store, sink, bus, max_attempts=10)

    await d.run_cycle()

    rec = store.get("a")
    assert rec.state == RecordState.DEAD_LETTERED
    assert rec.attempts == 1
    assert rec.last_error == "TerminalSinkError: 422"
    assert d.breaker.state == "closed"


@pytest.mark.asyncio
async def test_retries_exhausted_dead_letters(store, clock, bus):
    store.enqueue({}, "a")
    d = make_dispatcher(store, DownSink(), bus, max_attempts=2, threshold=10)

    await d.run_cycle()
    clock.advance(60)
    report = await d.run_cycle()

    assert report.dead_lettered == 1
    rec = store.get("a")
    assert rec.state == RecordState.DEAD_LETTERED
    assert rec.attempts == 2


@pytest.mark.asyncio
async def test_requeued_record_gets_fresh_budget(store, bus):
    store.enqueue({}, "a")
    d = make_dispatcher(store, DownSink(), bus, max_attempts=1)
    await d.run_cycle()
    assert store.get("a").state == RecordState.DEAD_LETTERED

    store.requeue_dead_letter("a")
    d2 = make_dispatcher(store, RecordingSink(), bus, max_attempts=1)
    await d2.run_cycle()

    rec = store.get("a")
    assert rec.state == RecordState.DELIVERED
    assert rec.attempts == 2


@pytest.mark.asyncio
async def test_open_breaker_does_not_consume_attempts(store, clock, bus):
    """Once open, cycles skip without claiming, so attempts stay put."""
    for i in range(5):
        store.enqueue({"i": i}, f"r{i}")
    sink = DownSink()
    d = make_dispatcher(store, sink, bus, workers=1)

    await d.run_cycle()
    assert d.breaker.state == "open"
    assert sink.calls == 5

    clock.advance(600)
    for _ in range(3):
        report = await d.run_cycle()
        assert report.skipped == "circuit_open"
        assert report.claimed == 0

    assert sink.calls == 5
    assert all(store.get(f"r{i}").attempts == 1 for i in range(5))
    assert store.pending_count() == 5


@pytest.mark.asyncio
async def test_breaker_opening_mid_batch_releases_the_rest(store, bus):
    for i in range(8):
        store.enqueue({"i": i}, f"r{i}")
    d = make_dispatcher(store, DownSink(), bus, workers=1, batch_size=8)

    report = await d.run_cycle()

    assert report.retried == 5
    assert report.released == 3
    assert sorted(store.get(f"r{i}").attempts for i in range(8)) == [0] * 3 + [1] * 5
    assert store.in_flight_count() == 0


@pytest.mark.asyncio
async def test_half_open_probe_success_resumes_delivery(store, clock, bus):
    tick = Tick()
    for i in range(3):
        store.enqueue({"i": i}, f"r{i}")
    sink = RecordingSink({f"r{i}": [RetryableSinkError("down")] for i in range(3)})
    d = make_dispatcher(store, sink, bus, tick=tick, threshold=3, workers=1)

    await d.run_cycle()
    assert d.breaker.state == "open"

    tick.t = 30
    clock.advance(600)
    report = await d.run_cycle()

    assert report.delivered == 3
    assert d.breaker.state == "closed"


@pytest.mark.asyncio
async def test_probe_whose_outcome_cannot_be_stored_reopens_circuit(store, clock, bus):
    """A store error while settling the probe trips the breaker instead of wedging it."""
    tick = Tick()
    for i in range(3):
        store.enqueue({"i": i}, f"r{i}")
    sink = RecordingSink({f"r{i}": [RetryableSinkError("down")] for i in range(3)})
    d = make_dispatcher(store, sink, bus, tick=tick, threshold=3, workers=1)
    await d.run_cycle()
    assert d.breaker.state == "open"

    mark_delivered = store.mark_delivered
    calls = []

    def locked_once(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise StoreUnavailable("database is locked")
        return mark_delivered(*args, **kwargs)

    store.mark_delivered = locked_once
    tick.t = 30
    clock.advance(600)
    report = await d.run_cycle()
    assert report.skipped == "store_unavailable"
    assert d.breaker.state == "open"

    tick.t = 60
    report = await d.run_cycle()
    assert report.delivered == 2
    assert d.breaker.state == "closed"

    # the probe's record is still claimed and comes back through stale recovery
    clock.advance(d.stale_after_sec)
    await d.maintain()
    await d.run_cycle()
    assert all(store.get(f"r{i}").state == RecordState.DELIVERED for i in range(3))


@pytest.mark.asyncio
async def test_bulk_probe_classifier_error_reopens_circuit(store, clock, bus):
    tick = Tick()
    store.enqueue({}, "a")
    store.enqueue({}, "b")

    class SwitchSink(BulkSink):
        down = True

        async def submit(self, record):
            if self.down:
                raise RetryableSinkError("down")
            await super().submit(record)

    broken = [False]

    def classifier(exc):
        if broken[0]:
            raise RuntimeError("classifier bug")
        return None

    sink = SwitchSink()
    d = Dispatcher(
        store,
        sink,
        retry_policy=RetryPolicy(jitter=False, classifier=classifier),
        circuit_breaker=CircuitBreaker(failure_threshold=1, half_open_after_sec=30, clock=tick),
        feedback=bus,
        use_bulk=True,
    )
    await d.run_cycle()
    assert d.breaker.state == "open"

    broken[0] = True
    tick.t = 30
    clock.advance(600)
    with pytest.raises(RuntimeError):
        await d.run_cycle()
    assert d.breaker.state == "open"
    assert store.in_flight_count() == 1

    broken[0] = False
    sink.down = False
    tick.t = 60
    report = await d.run_cycle()
    assert report.delivered == 1
    assert d.breaker.state == "closed"


@pytest.mark.asyncio
async def test_non_exclusive_startup_keeps_fresh_claims(store, clock, bus):
    """A dispatcher sharing the store only recovers claims past the stale window."""
    store.enqueue({}, "live")
    store.claim_batch(1)
    store.enqueue({}, "mine")
    sink = RecordingSink()
    d = make_dispatcher(store, sink, bus, exclusive=False)

    report = await d.run_cycle()

    assert sink.delivered == ["mine"]
    assert report.delivered == 1
    assert store.get("live").state == RecordState.IN_FLIGHT

@pytest.mark.asyncio
async def test_attempt_timeout_is_retryable(store, bus):
    store.enqueue({}, "slow")
    d = make_dispatcher(store, RecordingSink(delay=1.0), bus, attempt_timeout_sec=0.05)

    report = await d.run_cycle()

    assert report.retried == 1
    rec = store.get("slow")
    assert rec.state == RecordState.FAILED
    assert "timed out" in rec.last_error


@pytest.mark.asyncio
async def test_unknown_exceptions_are_retried(store, bus):
    store.enqueue({}, "a")
    d = make_dispatcher(store, RecordingSink({"a": [ConnectionResetError("reset")]}), bus)
    await d.run_cycle()
    assert store.get("a").state == RecordState.FAILED


@pytest.mark.asyncio
async def test_startup_recovers_records_left_in_flight(db_path, clock, bus):
    """Records claimed by a crashed run are delivered by the next one."""
    crashed = SqliteRecordStore(db_path, clock=clock)
    crashed.enqueue({}, "a")
    crashed.enqueue({}, "b")
    crashed.claim_batch(2)
    crashed.close()

    store = SqliteRecordStore(db_path, clock=clock)
    try:
        sink = RecordingSink()
        d = make_dispatcher(store, sink, bus)
        report = await d.run_cycle()
        assert report.delivered == 2
        assert store.get("a").attempts == 1
        assert sorted(sink.delivered) == ["a", "b"]
    finally:
        store.close()


@pytest.mark.asyncio
async def test_payload_replaced_in_flight_is_redelivered(store, bus):
    store.enqueue({"v": 1}, "a")

    class ReplacingSink(RecordingSink):
        async def submit(self, record):
            await super().submit(record)
            if record.payload == {"v": 1}:
                store.enqueue({"v": 2}, "a", on_duplicate="update")

    sink = ReplacingSink()
    d = make_dispatcher(store, sink, bus)

    first = await d.run_cycle()
    assert first.delivered == 0
    assert store.get("a").state == RecordState.PENDING

    second = await d.run_cycle()
    assert second.delivered == 1
    assert store.get("a").payload == {"v": 2}
    assert sink.submissions == ["a", "a"]


@pytest.mark.asyncio
async def test_bulk_delivery_uses_submit_batch(store, bus):
    for rid in ("A", "B", "C"):
        store.enqueue({"id": rid}, rid)
    sink = BulkSink({"B": [TerminalSinkError("rejected")]})
    d = make_dispatcher(store, sink, bus, use_bulk=True)

    report = await d.run_cycle()

    assert sink.batches == [["A", "B", "C"]]
    assert report.delivered == 2
    assert report.dead_lettered == 1
    assert d.breaker.failures == 0


@pytest.mark.asyncio
async def test_bulk_missing_outcome_is_retried(store, bus):
    store.enqueue({}, "a")
    store.enqueue({}, "b")

    class ForgetfulSink(BulkSink):
        async def submit_batch(self, records):
            return {records[0].id: None}

    d = make_dispatcher(store, ForgetfulSink(), bus, use_bulk=True)
    await d.run_cycle()

    assert store.get("a").state == RecordState.DELIVERED
    assert store.get("b").state == RecordState.FAILED


@pytest.mark.asyncio
async def test_cycle_publishes_backlog_event(store, bus):
    events = []

    async def on_event(evt):
        events.append(evt)

    bus.subscribe(on_event)
    store.enqueue({}, "a")
    d = make_dispatcher(store, RecordingSink(), bus, queue_id="evt-test")

    await d.run_cycle()

    assert events[-1].queue_id == "evt-test"
    assert events[-1].pending == 0
    assert events[-1].reason == "drained"
    assert events[-1].circuit_state == "closed"


@pytest.mark.asyncio
async def test_delivery_metrics_recorded(store, bus):
    store.enqueue({}, "a")
    d = make_dispatcher(store, RecordingSink(), bus, queue_id="metrics-test")
    await d.run_cycle()

    delivered = REGISTRY.get_sample_value(
        "relay_deliveries_total", {"queue": "metrics-test", "outcome": "delivered"}
    )
    assert delivered == 1.0


@pytest.mark.asyncio
async def test_store_failure_skips_cycle(store, bus):
    store.enqueue({}, "a")
    d = make_dispatcher(store, RecordingSink(), bus)
    store.close()

    report = await d.run_cycle()
    assert report.skipped == "store_unavailable"


@pytest.mark.asyncio
async def test_background_loop_delivers_on_notify(store, bus):
    d = make_dispatcher(store, RecordingSink(), bus, tick_interval_sec=30)
    await d.start()
    try:
        await wait_until(lambda: d.running)
        store.enqueue({}, "a")
        d.notify()
        await wait_until(lambda: store.get("a").state == RecordState.DELIVERED)
    finally:
        await d.stop(grace_period=1.0)
    assert not d.running


@pytest.mark.asyncio
async def test_stop_abandons_inflight_without_failing_it(store, clock, bus):
    """Records still in a submission at shutdown stay in_flight, then get recovered."""
    store.enqueue({}, "a")
    slow = RecordingSink(delay=5.0)
    d = make_dispatcher(store, slow, bus, attempt_timeout_sec=10)
    await d.start()
    await wait_until(lambda: slow.submissions == ["a"])

    await d.stop(grace_period=0.05)

    rec = store.get("a")
    assert rec.state == RecordState.IN_FLIGHT
    assert rec.attempts == 0

    sink = RecordingSink()
    d2 = make_dispatcher(store, sink, bus)
    await d2.run_cycle()
    assert store.get("a").state == RecordState.DELIVERED


def test_invalid_configuration(store, bus):
    with pytest.raises(ValueError):
        Dispatcher(store, RecordingSink(), batch_size=0, feedback=bus)
    with pytest.raises(ValueError):
        Dispatcher(store, RecordingSink(), workers=0, feedback=bus)
