"""
Utility functions for durable-relay.

Time conversion helpers, id generation and payload (de)serialization.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Union

from .errors import InvalidRecord


def generate_id() -> str:
    """Generate a UUID string for record identification."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def to_epoch(dt: Union[datetime, float, None]) -> Optional[float]:
    """Datetime (or epoch float) to epoch seconds; naive datetimes are UTC."""
    if dt is None:
        return None
    if isinstance(dt, (int, float)):
        return float(dt)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def from_epoch(ts: Optional[float]) -> Optional[datetime]:
    """Epoch seconds to an aware UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def dumps_payload(payload: Any) -> str:
    """Serialize a payload for storage, rejecting values JSON cannot carry."""
    try:
        return json.dumps(payload, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise InvalidRecord(f"payload is not JSON-serializable: {e}") from e


def loads_payload(raw: Union[str, bytes, None]) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def truncate_error(err: Union[BaseException, str, None], limit: int = 500) -> Optional[str]:
    """Render an error for the `last_error` column."""
    if err is None:
        return None
    if isinstance(err, BaseException):
        text = f"{type(err).__name__}: {err}" if str(err) else type(err).__name__
    else:
        text = str(err)
    return text[:limit]
