"""
Environment-based runtime settings (RELAY_* variables, optional .env file).
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..store.base import RecordStore
from .policy import CircuitBreaker, RetryPolicy


class RelayRuntimeSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RELAY_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    queue_id: str = "default"

    # storage
    database_path: Path = Path(".relay/queue.db")
    postgres_dsn: Optional[str] = None

    # dispatcher
    batch_size: int = 20
    workers: int = 2
    use_bulk: bool = False
    tick_interval_sec: float = 30.0
    attempt_timeout_sec: float = 10.0
    shutdown_grace_sec: float = 10.0
    stale_after_sec: float = 300.0
    maintenance_interval_sec: float = 60.0
    delivered_retention_sec: float = 86_400.0

    # retry policy
    max_attempts: int = 6
    initial_backoff_ms: int = 500
    max_backoff_ms: int = 60_000
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.2

    # circuit breaker
    failure_threshold: int = 5
    half_open_after_sec: float = 30.0

    # observability
    backlog_high_watermark: int = 1000
    backlog_low_watermark: int = 500
    metrics_port: Optional[int] = None

    # endpoints
    sink_url: Optional[str] = None
    connectivity_url: Optional[str] = None
    connectivity_interval_sec: float = 30.0

    @model_validator(mode="after")
    def _check_bounds(self) -> "RelayRuntimeSettings":
        if self.batch_size <= 0 or self.workers <= 0:
            raise ValueError("batch_size and workers must be > 0")
        if self.backlog_low_watermark > self.backlog_high_watermark:
            raise ValueError("backlog_low_watermark must not exceed backlog_high_watermark")
        return self

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_backoff_ms=self.initial_backoff_ms,
            max_backoff_ms=self.max_backoff_ms,
            backoff_multiplier=self.backoff_multiplier,
            jitter=self.jitter_ratio > 0,
            jitter_ratio=self.jitter_ratio,
        )

    def circuit_breaker(self) -> CircuitBreaker:
        return CircuitBreaker(
            failure_threshold=self.failure_threshold,
            half_open_after_sec=self.half_open_after_sec,
            name=self.queue_id,
        )

    def open_store(self) -> RecordStore:
        if self.postgres_dsn:
            from ..store.postgres import PostgresRecordStore

            return PostgresRecordStore(self.postgres_dsn)
        from ..store.sqlite import SqliteRecordStore

        return SqliteRecordStore(self.database_path)


@lru_cache()
def get_settings() -> RelayRuntimeSettings:
    return RelayRuntimeSettings()
