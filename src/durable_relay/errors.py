"""
Custom exceptions for durable-relay.

Store errors propagate to producers; sink errors stay inside the dispatcher.
"""


class RelayError(Exception):
    """Base error for durable-relay."""

    pass


class StoreUnavailable(RelayError):
    """The local persistence medium cannot be read or written."""

    pass


class InvalidRecord(RelayError, ValueError):
    """Record rejected before reaching the store (bad id or payload)."""

    pass


class SinkError(RelayError):
    """Base for errors reported by a sink client."""

    pass


class RetryableSinkError(SinkError):
    """Transient sink failure: timeout, rate limit, 5xx-equivalent."""

    pass


class TerminalSinkError(SinkError):
    """Permanent sink rejection: malformed payload, business-rule refusal."""

    pass


class CircuitOpenError(RelayError):
    """Circuit breaker refused the call."""

    pass


def map_store_error(e: Exception) -> RelayError:
    import sqlite3

    import psycopg

    if isinstance(e, RelayError):
        return e
    if isinstance(e, (sqlite3.Error, psycopg.Error, OSError)):
        return StoreUnavailable(str(e))
    return RelayError(str(e))
