"""
Delivery metrics, registered in the Prometheus global REGISTRY on import.
"""

from typing import Optional

from loguru import logger
from prometheus_client import Counter, Gauge, Histogram, start_http_server

DELIVERIES_TOTAL = Counter(
    "relay_deliveries_total",
    "Delivery attempts by outcome",
    ["queue", "outcome"],  # delivered | retried | dead_lettered | released
)

CYCLES_TOTAL = Counter(
    "relay_cycles_total",
    "Dispatcher cycles by result",
    ["queue", "result"],  # ran | empty | circuit_open | store_unavailable
)

SUBMIT_LATENCY_SECONDS = Histogram(
    "relay_submit_latency_seconds",
    "Sink submission latency in seconds",
    ["queue"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

PENDING_RECORDS = Gauge("relay_pending_records", "Records waiting for delivery", ["queue"])
IN_FLIGHT_RECORDS = Gauge("relay_in_flight_records", "Records claimed by the dispatcher", ["queue"])
DEAD_LETTER_RECORDS = Gauge("relay_dead_letter_records", "Dead-lettered records", ["queue"])

CIRCUIT_STATE = Gauge(
    "relay_circuit_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["queue"],
)

LAST_DELIVERY_TIMESTAMP = Gauge(
    "relay_last_delivery_timestamp_seconds",
    "Unix time of the last successful delivery",
    ["queue"],
)

CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsRegistry:
    """Centralized access to relay metrics."""

    deliveries_total = DELIVERIES_TOTAL
    cycles_total = CYCLES_TOTAL
    submit_latency_seconds = SUBMIT_LATENCY_SECONDS
    pending_records = PENDING_RECORDS
    in_flight_records = IN_FLIGHT_RECORDS
    dead_letter_records = DEAD_LETTER_RECORDS
    circuit_state = CIRCUIT_STATE
    last_delivery_timestamp = LAST_DELIVERY_TIMESTAMP

    def set_circuit_state(self, queue: str, state: str) -> None:
        self.circuit_state.labels(queue=queue).set(CIRCUIT_STATE_VALUES.get(state, 0))

    _served_port: Optional[int] = None

    def serve(self, port: int) -> None:
        """Expose /metrics over HTTP; later calls are no-ops."""
        if self._served_port is not None:
            return
        start_http_server(port)
        self._served_port = port
        logger.info(f"Prometheus metrics served on :{port}")


# Singleton instance
metrics_registry = MetricsRegistry()
