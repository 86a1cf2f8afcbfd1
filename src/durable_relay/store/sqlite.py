"""
SQLite-backed durable store.

Embedded and local: no network dependency. Writes go through one
`BEGIN IMMEDIATE` transaction at a time (WAL journal, synchronous=FULL), so a
committed enqueue survives a crash right after the call returns, and a
recovery pass blocks concurrent enqueues until it commits.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence, Union

from loguru import logger

from ..errors import StoreUnavailable, map_store_error
from ..models import Record, RecordState
from ..utils import dumps_payload, truncate_error
from .base import TABLE, Clock, Duration, Instant, OnDuplicate, RecordStore, as_seconds

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
  id TEXT PRIMARY KEY,
  payload TEXT NOT NULL,
  state TEXT NOT NULL,
  attempts INTEGER NOT NULL DEFAULT 0,
  retry_base INTEGER NOT NULL DEFAULT 0,
  revision INTEGER NOT NULL DEFAULT 1,
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL,
  next_attempt_at REAL NOT NULL,
  claimed_at REAL,
  delivered_at REAL,
  last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_{TABLE}_due ON {TABLE}(state, next_attempt_at, created_at);
CREATE INDEX IF NOT EXISTS idx_{TABLE}_delivered ON {TABLE}(state, delivered_at);
"""

_WAITING = ("pending", "failed")


class SqliteRecordStore(RecordStore):
    """Durable store on a local SQLite file."""

    def __init__(
        self,
        path: Union[str, Path],
        *,
        clock: Optional[Clock] = None,
        busy_timeout_ms: int = 5000,
    ) -> None:
        super().__init__(clock=clock)
        self.path = Path(path)
        self._busy_timeout_ms = busy_timeout_ms
        # Serializes this process's access to the shared connection.
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = self._connect()
            self._conn.executescript(SCHEMA_SQL)
        except (sqlite3.Error, OSError) as e:
            raise map_store_error(e) from e
        logger.debug(f"SqliteRecordStore opened at {self.path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=FULL;")
        conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)};")
        return conn

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreUnavailable(f"store at {self.path} is closed")
        return self._conn

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._require_conn()
            try:
                conn.execute("BEGIN IMMEDIATE;")
            except sqlite3.Error as e:
                raise map_store_error(e) from e
            try:
                yield conn
                conn.execute("COMMIT;")
            except BaseException as e:
                try:
                    conn.execute("ROLLBACK;")
                except sqlite3.Error as rb:
                    logger.warning(f"Rollback failed on {self.path}: {rb}")
                if isinstance(e, sqlite3.Error):
                    raise map_store_error(e) from e
                raise

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._require_conn()
            try:
                yield conn
            except sqlite3.Error as e:
                raise map_store_error(e) from e

    # ---------- producer API

    def enqueue(
        self,
        payload: Any,
        record_id: Optional[str] = None,
        *,
        on_duplicate: OnDuplicate = "ignore",
    ) -> Record:
        rid = self._resolve_id(record_id)
        body = dumps_payload(payload)
        now = self.now()
        with self._tx() as conn:
            row = conn.execute(f"SELECT * FROM {TABLE} WHERE id = ?", (rid,)).fetchone()
            if row is None:
                conn.execute(
                    f"INSERT INTO {TABLE} (id, payload, state, attempts, retry_base, revision, "
                    "created_at, updated_at, next_attempt_at) "
                    "VALUES (:id, :payload, 'pending', 0, 0, 1, :now, :now, :now)",
                    {"id": rid, "payload": body, "now": now},
                )
                logger.debug(f"Enqueued record {rid}")
            elif on_duplicate == "update" and row["payload"] != body:
                self._replace_payload(conn, row, body, now)
            else:
                logger.debug(f"Duplicate enqueue for {rid} ignored (state={row['state']})")
            row = conn.execute(f"SELECT * FROM {TABLE} WHERE id = ?", (rid,)).fetchone()
        return self._row_to_record(row)

    def _replace_payload(self, conn: sqlite3.Connection, row: sqlite3.Row, body: str, now: float):
        state = RecordState(row["state"])
        if state.is_terminal:
            # New content after a terminal outcome must still be delivered.
            conn.execute(
                f"UPDATE {TABLE} SET payload = :payload, revision = revision + 1, "
                "state = 'pending', retry_base = attempts, next_attempt_at = :now, "
                "delivered_at = NULL, updated_at = :now WHERE id = :id",
                {"payload": body, "now": now, "id": row["id"]},
            )
            logger.info(f"Record {row['id']} re-armed from {state.value} with new payload")
        else:
            conn.execute(
                f"UPDATE {TABLE} SET payload = :payload, revision = revision + 1, "
                "updated_at = :now WHERE id = :id",
                {"payload": body, "now": now, "id": row["id"]},
            )
            logger.debug(f"Record {row['id']} payload replaced (state={state.value})")

    # ---------- dispatcher API

    def claim_batch(self, max_count: int) -> list[Record]:
        if max_count <= 0:
            return []
        now = self.now()
        with self._tx() as conn:
            candidates = conn.execute(
                f"SELECT id FROM {TABLE} WHERE state IN (?, ?) AND next_attempt_at <= ? "
                "ORDER BY created_at, id LIMIT ?",
                (*_WAITING, now, max_count),
            ).fetchall()
            claimed: list[str] = []
            for c in candidates:
                cur = conn.execute(
                    f"UPDATE {TABLE} SET state = 'in_flight', claimed_at = ?, updated_at = ? "
                    "WHERE id = ? AND state IN (?, ?)",
                    (now, now, c["id"], *_WAITING),
                )
                if cur.rowcount == 1:
                    claimed.append(c["id"])
            if not claimed:
                return []
            marks = ",".join("?" for _ in claimed)
            rows = conn.execute(
                f"SELECT * FROM {TABLE} WHERE id IN ({marks}) ORDER BY created_at, id",
                claimed,
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def mark_delivered(self, record_id: str, *, revision: Optional[int] = None) -> bool:
        now = self.now()
        with self._tx() as conn:
            row = conn.execute(
                f"SELECT state, revision FROM {TABLE} WHERE id = ?", (record_id,)
            ).fetchone()
            if row is None:
                logger.warning(f"mark_delivered: record {record_id} not found")
                return False
            if row["state"] not in ("in_flight", *_WAITING):
                return False
            if revision is not None and row["revision"] != revision:
                conn.execute(
                    f"UPDATE {TABLE} SET state = 'pending', attempts = attempts + 1, "
                    "next_attempt_at = :now, claimed_at = NULL, last_error = NULL, "
                    "updated_at = :now WHERE id = :id",
                    {"now": now, "id": record_id},
                )
                logger.info(
                    f"Record {record_id} delivered at revision {revision} but is now at "
                    f"{row['revision']}; requeued"
                )
                return False
            conn.execute(
                f"UPDATE {TABLE} SET state = 'delivered', attempts = attempts + 1, "
                "delivered_at = :now, claimed_at = NULL, last_error = NULL, updated_at = :now "
                "WHERE id = :id",
                {"now": now, "id": record_id},
            )
        return True

    def mark_retry(self, record_id: str, next_attempt_at: Instant, error: Any) -> bool:
        now = self.now()
        with self._tx() as conn:
            cur = conn.execute(
                f"UPDATE {TABLE} SET state = 'failed', attempts = attempts + 1, "
                "next_attempt_at = :next, last_error = :err, claimed_at = NULL, "
                "updated_at = :now WHERE id = :id AND state = 'in_flight'",
                {
                    "next": self._instant(next_attempt_at),
                    "err": truncate_error(error),
                    "now": now,
                    "id": record_id,
                },
            )
            return cur.rowcount == 1

    def mark_dead_letter(self, record_id: str, error: Any) -> bool:
        now = self.now()
        with self._tx() as conn:
            cur = conn.execute(
                f"UPDATE {TABLE} SET state = 'dead_lettered', attempts = attempts + 1, "
                "last_error = :err, claimed_at = NULL, updated_at = :now "
                "WHERE id = :id AND state = 'in_flight'",
                {"err": truncate_error(error), "now": now, "id": record_id},
            )
            return cur.rowcount == 1

    def release(self, record_ids: Iterable[str]) -> int:
        ids = list(record_ids)
        if not ids:
            return 0
        now = self.now()
        marks = ",".join("?" for _ in ids)
        with self._tx() as conn:
            cur = conn.execute(
                f"UPDATE {TABLE} SET state = 'pending', claimed_at = NULL, updated_at = ? "
                f"WHERE state = 'in_flight' AND id IN ({marks})",
                (now, *ids),
            )
            return cur.rowcount

    def recover_stale_in_flight(self, older_than: Duration) -> int:
        now = self.now()
        cutoff = now - as_seconds(older_than)
        with self._tx() as conn:
            cur = conn.execute(
                f"UPDATE {TABLE} SET state = 'pending', claimed_at = NULL, updated_at = ? "
                "WHERE state = 'in_flight' AND claimed_at <= ?",
                (now, cutoff),
            )
            recovered = cur.rowcount
        if recovered:
            logger.info(f"Recovered {recovered} stale in-flight record(s) in {self.path}")
        return recovered

    # ---------- observability

    def counts(self) -> dict[RecordState, int]:
        out = self._empty_counts()
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT state, COUNT(*) AS n FROM {TABLE} GROUP BY state"
            ).fetchall()
        for r in rows:
            out[RecordState(r["state"])] = r["n"]
        return out

    def get(self, record_id: str) -> Optional[Record]:
        with self._read() as conn:
            row = conn.execute(f"SELECT * FROM {TABLE} WHERE id = ?", (record_id,)).fetchone()
        return self._row_to_record(row) if row is not None else None

    def next_due_at(self) -> Optional[float]:
        with self._read() as conn:
            row = conn.execute(
                f"SELECT MIN(next_attempt_at) AS due FROM {TABLE} WHERE state IN (?, ?)",
                _WAITING,
            ).fetchone()
        return row["due"]

    # ---------- operator API

    def list_dead_letters(self, limit: int = 100) -> list[Record]:
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT * FROM {TABLE} WHERE state = 'dead_lettered' "
                "ORDER BY updated_at DESC, id LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def purge_dead_letters(self, record_ids: Optional[Sequence[str]] = None) -> int:
        with self._tx() as conn:
            if record_ids is None:
                cur = conn.execute(f"DELETE FROM {TABLE} WHERE state = 'dead_lettered'")
            else:
                ids = list(record_ids)
                if not ids:
                    return 0
                marks = ",".join("?" for _ in ids)
                cur = conn.execute(
                    f"DELETE FROM {TABLE} WHERE state = 'dead_lettered' AND id IN ({marks})",
                    ids,
                )
            purged = cur.rowcount
        if purged:
            logger.info(f"Purged {purged} dead-lettered record(s)")
        return purged

    def requeue_dead_letter(self, record_id: str) -> bool:
        now = self.now()
        with self._tx() as conn:
            cur = conn.execute(
                f"UPDATE {TABLE} SET state = 'pending', retry_base = attempts, "
                "next_attempt_at = :now, claimed_at = NULL, updated_at = :now "
                "WHERE id = :id AND state = 'dead_lettered'",
                {"now": now, "id": record_id},
            )
            ok = cur.rowcount == 1
        if ok:
            logger.info(f"Requeued dead-lettered record {record_id}")
        return ok

    def collect_garbage(self, retention: Duration) -> int:
        cutoff = self.now() - as_seconds(retention)
        with self._tx() as conn:
            cur = conn.execute(
                f"DELETE FROM {TABLE} WHERE state = 'delivered' AND delivered_at <= ?",
                (cutoff,),
            )
            removed = cur.rowcount
        if removed:
            logger.debug(f"Garbage-collected {removed} delivered record(s)")
        return removed

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
