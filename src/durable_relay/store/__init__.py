"""Durable record stores."""

from .base import RecordStore, OnDuplicate
from .sqlite import SqliteRecordStore
from .postgres import PostgresRecordStore

__all__ = [
    "RecordStore",
    "OnDuplicate",
    "SqliteRecordStore",
    "PostgresRecordStore",
]
