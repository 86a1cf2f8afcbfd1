"""
PostgreSQL-backed durable store.

Same contract as the SQLite store, for deployments where several relay
processes share one queue. Claiming uses `FOR UPDATE SKIP LOCKED`, so
concurrent dispatchers never receive the same record.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool
from loguru import logger

from ..errors import map_store_error
from ..models import Record, RecordState
from ..utils import dumps_payload, truncate_error
from .base import TABLE, Clock, Duration, Instant, OnDuplicate, RecordStore, as_seconds

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
  id TEXT PRIMARY KEY,
  payload JSONB NOT NULL,
  state TEXT NOT NULL,
  attempts INTEGER NOT NULL DEFAULT 0,
  retry_base INTEGER NOT NULL DEFAULT 0,
  revision INTEGER NOT NULL DEFAULT 1,
  created_at DOUBLE PRECISION NOT NULL,
  updated_at DOUBLE PRECISION NOT NULL,
  next_attempt_at DOUBLE PRECISION NOT NULL,
  claimed_at DOUBLE PRECISION,
  delivered_at DOUBLE PRECISION,
  last_error TEXT
);
CREATE INDEX IF NOT EXISTS idx_{TABLE}_due ON {TABLE}(state, next_attempt_at, created_at);
CREATE INDEX IF NOT EXISTS idx_{TABLE}_delivered ON {TABLE}(state, delivered_at);
"""

CLAIM_SQL = f"""
UPDATE {TABLE} SET state = 'in_flight', claimed_at = %(now)s, updated_at = %(now)s
WHERE id IN (
  SELECT id FROM {TABLE}
  WHERE state IN ('pending', 'failed') AND next_attempt_at <= %(now)s
  ORDER BY created_at, id
  LIMIT %(limit)s
  FOR UPDATE SKIP LOCKED
)
RETURNING *
"""


class PostgresRecordStore(RecordStore):
    """Durable store on a PostgreSQL table, pooled via psycopg_pool."""

    shared = True

    def __init__(
        self,
        dsn: str,
        *,
        clock: Optional[Clock] = None,
        pool_min: int = 1,
        pool_max: int = 5,
        connect_timeout: float = 10.0,
        app_name: Optional[str] = "durable_relay",
    ) -> None:
        super().__init__(clock=clock)
        self._app_name = app_name
        try:
            self._pool = ConnectionPool(
                conninfo=dsn,
                min_size=pool_min,
                max_size=pool_max,
                timeout=connect_timeout,
                kwargs={"row_factory": dict_row},
                open=True,
            )
            with self._conn() as conn, conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
        except psycopg.Error as e:
            raise map_store_error(e) from e

    @contextmanager
    def _conn(self) -> Iterator[psycopg.Connection]:
        try:
            with self._pool.connection() as conn:
                if self._app_name:
                    with conn.cursor() as cur:
                        cur.execute("SET application_name = %s", (self._app_name,))
                try:
                    yield conn
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except psycopg.Error as e:
            raise map_store_error(e) from e

    def _decode_payload(self, raw: Any) -> Any:
        # jsonb columns arrive already decoded
        return raw

    # ---------- producer API

    def enqueue(
        self,
        payload: Any,
        record_id: Optional[str] = None,
        *,
        on_duplicate: OnDuplicate = "ignore",
    ) -> Record:
        rid = self._resolve_id(record_id)
        dumps_payload(payload)  # validates serializability
        body = Jsonb(payload)
        now = self.now()
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"INSERT INTO {TABLE} (id, payload, state, attempts, retry_base, revision, "
                "created_at, updated_at, next_attempt_at) "
                "VALUES (%(id)s, %(payload)s, 'pending', 0, 0, 1, %(now)s, %(now)s, %(now)s) "
                "ON CONFLICT (id) DO NOTHING",
                {"id": rid, "payload": body, "now": now},
            )
            if cur.rowcount == 1:
                logger.debug(f"Enqueued record {rid}")
            elif on_duplicate == "update":
                cur.execute(
                    f"UPDATE {TABLE} SET payload = %(payload)s, revision = revision + 1, "
                    "state = CASE WHEN state IN ('delivered', 'dead_lettered') "
                    "  THEN 'pending' ELSE state END, "
                    "retry_base = CASE WHEN state IN ('delivered', 'dead_lettered') "
                    "  THEN attempts ELSE retry_base END, "
                    "next_attempt_at = CASE WHEN state IN ('delivered', 'dead_lettered') "
                    "  THEN %(now)s ELSE next_attempt_at END, "
                    "delivered_at = CASE WHEN state IN ('delivered', 'dead_lettered') "
                    "  THEN NULL ELSE delivered_at END, "
                    "updated_at = %(now)s "
                    "WHERE id = %(id)s AND payload IS DISTINCT FROM %(payload)s",
                    {"id": rid, "payload": body, "now": now},
                )
                if cur.rowcount:
                    logger.debug(f"Record {rid} payload replaced")
            cur.execute(f"SELECT * FROM {TABLE} WHERE id = %s", (rid,))
            row = cur.fetchone()
        return self._row_to_record(row)

    # ---------- dispatcher API

    def claim_batch(self, max_count: int) -> list[Record]:
        if max_count <= 0:
            return []
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(CLAIM_SQL, {"now": self.now(), "limit": max_count})
            rows = cur.fetchall()
        records = [self._row_to_record(r) for r in rows]
        records.sort(key=lambda r: (r.created_at, r.id))
        return records

    def mark_delivered(self, record_id: str, *, revision: Optional[int] = None) -> bool:
        params = {"id": record_id, "now": self.now(), "rev": revision}
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"SELECT state, revision FROM {TABLE} WHERE id = %(id)s FOR UPDATE", params
            )
            row = cur.fetchone()
            if row is None:
                logger.warning(f"mark_delivered: record {record_id} not found")
                return False
            if row["state"] not in ("in_flight", "pending", "failed"):
                return False
            if revision is not None and row["revision"] != revision:
                cur.execute(
                    f"UPDATE {TABLE} SET state = 'pending', attempts = attempts + 1, "
                    "next_attempt_at = %(now)s, claimed_at = NULL, last_error = NULL, "
                    "updated_at = %(now)s WHERE id = %(id)s",
                    params,
                )
                logger.info(f"Record {record_id} changed while in flight; requeued")
                return False
            cur.execute(
                f"UPDATE {TABLE} SET state = 'delivered', attempts = attempts + 1, "
                "delivered_at = %(now)s, claimed_at = NULL, last_error = NULL, "
                "updated_at = %(now)s WHERE id = %(id)s",
                params,
            )
        return True

    def mark_retry(self, record_id: str, next_attempt_at: Instant, error: Any) -> bool:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"UPDATE {TABLE} SET state = 'failed', attempts = attempts + 1, "
                "next_attempt_at = %(next)s, last_error = %(err)s, claimed_at = NULL, "
                "updated_at = %(now)s WHERE id = %(id)s AND state = 'in_flight'",
                {
                    "next": self._instant(next_attempt_at),
                    "err": truncate_error(error),
                    "now": self.now(),
                    "id": record_id,
                },
            )
            return cur.rowcount == 1

    def mark_dead_letter(self, record_id: str, error: Any) -> bool:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"UPDATE {TABLE} SET state = 'dead_lettered', attempts = attempts + 1, "
                "last_error = %(err)s, claimed_at = NULL, updated_at = %(now)s "
                "WHERE id = %(id)s AND state = 'in_flight'",
                {"err": truncate_error(error), "now": self.now(), "id": record_id},
            )
            return cur.rowcount == 1

    def release(self, record_ids: Iterable[str]) -> int:
        ids = list(record_ids)
        if not ids:
            return 0
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"UPDATE {TABLE} SET state = 'pending', claimed_at = NULL, updated_at = %(now)s "
                "WHERE state = 'in_flight' AND id = ANY(%(ids)s)",
                {"now": self.now(), "ids": ids},
            )
            return cur.rowcount

    def recover_stale_in_flight(self, older_than: Duration) -> int:
        now = self.now()
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"UPDATE {TABLE} SET state = 'pending', claimed_at = NULL, updated_at = %(now)s "
                "WHERE state = 'in_flight' AND claimed_at <= %(cutoff)s",
                {"now": now, "cutoff": now - as_seconds(older_than)},
            )
            recovered = cur.rowcount
        if recovered:
            logger.info(f"Recovered {recovered} stale in-flight record(s)")
        return recovered

    # ---------- observability

    def counts(self) -> dict[RecordState, int]:
        out = self._empty_counts()
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT state, COUNT(*) AS n FROM {TABLE} GROUP BY state")
            for r in cur.fetchall():
                out[RecordState(r["state"])] = r["n"]
        return out

    def get(self, record_id: str) -> Optional[Record]:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT * FROM {TABLE} WHERE id = %s", (record_id,))
            row = cur.fetchone()
        return self._row_to_record(row) if row is not None else None

    def next_due_at(self) -> Optional[float]:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"SELECT MIN(next_attempt_at) AS due FROM {TABLE} "
                "WHERE state IN ('pending', 'failed')"
            )
            row = cur.fetchone()
        return row["due"] if row else None

    # ---------- operator API

    def list_dead_letters(self, limit: int = 100) -> list[Record]:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"SELECT * FROM {TABLE} WHERE state = 'dead_lettered' "
                "ORDER BY updated_at DESC, id LIMIT %s",
                (limit,),
            )
            rows = cur.fetchall()
        return [self._row_to_record(r) for r in rows]

    def purge_dead_letters(self, record_ids: Optional[Sequence[str]] = None) -> int:
        with self._conn() as conn, conn.cursor() as cur:
            if record_ids is None:
                cur.execute(f"DELETE FROM {TABLE} WHERE state = 'dead_lettered'")
            else:
                cur.execute(
                    f"DELETE FROM {TABLE} WHERE state = 'dead_lettered' AND id = ANY(%s)",
                    (list(record_ids),),
                )
            purged = cur.rowcount
        if purged:
            logger.info(f"Purged {purged} dead-lettered record(s)")
        return purged

    def requeue_dead_letter(self, record_id: str) -> bool:
        now = self.now()
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"UPDATE {TABLE} SET state = 'pending', retry_base = attempts, "
                "next_attempt_at = %(now)s, claimed_at = NULL, updated_at = %(now)s "
                "WHERE id = %(id)s AND state = 'dead_lettered'",
                {"now": now, "id": record_id},
            )
            ok = cur.rowcount == 1
        if ok:
            logger.info(f"Requeued dead-lettered record {record_id}")
        return ok

    def collect_garbage(self, retention: Duration) -> int:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"DELETE FROM {TABLE} WHERE state = 'delivered' AND delivered_at <= %s",
                (self.now() - as_seconds(retention),),
            )
            return cur.rowcount

    def close(self) -> None:
        self._pool.close()
