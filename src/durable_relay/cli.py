from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

import typer
from loguru import logger

from .coordinator import DeadLetterArchive, DeliveryQueue, get_settings
from .coordinator.archive import purge_into_archive
from .errors import RelayError
from .models import DeadLetter, RecordState
from .sinks import HttpSinkClient
from .store import PostgresRecordStore, RecordStore, SqliteRecordStore

app = typer.Typer(help="durable-relay operational CLI")

# ---------------------------
# Common options
# ---------------------------


def db_opt() -> Path:
    return typer.Option(
        Path(".relay/queue.db"), "--db", envvar="RELAY_DATABASE_PATH", help="SQLite queue file"
    )


def dsn_opt() -> Optional[str]:
    return typer.Option(
        None, "--dsn", envvar="RELAY_POSTGRES_DSN", help="PostgreSQL DSN (overrides --db)"
    )


def _open_store(db: Path, dsn: Optional[str]) -> RecordStore:
    if dsn:
        return PostgresRecordStore(dsn)
    db.parent.mkdir(parents=True, exist_ok=True)
    return SqliteRecordStore(db)


def _fail(e: Exception) -> None:
    logger.error(f"{type(e).__name__}: {e}")
    sys.exit(1)


# ---------------------------
# Producer
# ---------------------------


@app.command("enqueue")
def enqueue(
    payload: str = typer.Argument(..., help="JSON payload"),
    record_id: Optional[str] = typer.Option(None, "--id", help="Stable record id"),
    update: bool = typer.Option(False, "--update", help="Replace the payload of an existing id"),
    db: Path = db_opt(),
    dsn: Optional[str] = dsn_opt(),
):
    """Persist one record for delivery."""
    try:
        body = json.loads(payload)
    except json.JSONDecodeError as e:
        logger.error(f"Payload is not valid JSON: {e}")
        sys.exit(2)
    try:
        with _open_store(db, dsn) as store:
            rec = store.enqueue(body, record_id, on_duplicate="update" if update else "ignore")
    except RelayError as e:
        _fail(e)
    logger.success(f"Enqueued {rec.id} (state={rec.state.value}, revision={rec.revision})")


# ---------------------------
# Inspection
# ---------------------------


@app.command("stats")
def stats(db: Path = db_opt(), dsn: Optional[str] = dsn_opt()):
    """Print record counts per state."""
    try:
        with _open_store(db, dsn) as store:
            counts = store.counts()
            due = store.next_due_at()
    except RelayError as e:
        _fail(e)
    out = {state.value: counts[state] for state in RecordState}
    out["next_due_at"] = due
    typer.echo(json.dumps(out, indent=2))


@app.command("dead-letters")
def dead_letters(
    limit: int = typer.Option(100, "--limit"),
    db: Path = db_opt(),
    dsn: Optional[str] = dsn_opt(),
):
    """List dead-lettered records as NDJSON, newest first."""
    try:
        with _open_store(db, dsn) as store:
            records = store.list_dead_letters(limit)
    except RelayError as e:
        _fail(e)
    for r in records:
        typer.echo(DeadLetter.from_record(r).model_dump_json())


# ---------------------------
# Operator actions
# ---------------------------


@app.command("requeue")
def requeue(
    record_ids: List[str] = typer.Argument(..., help="Dead-lettered record ids"),
    db: Path = db_opt(),
    dsn: Optional[str] = dsn_opt(),
):
    """Return dead letters to pending with a fresh retry budget."""
    try:
        with _open_store(db, dsn) as store:
            done = [rid for rid in record_ids if store.requeue_dead_letter(rid)]
    except RelayError as e:
        _fail(e)
    for rid in set(record_ids) - set(done):
        logger.warning(f"{rid} is not dead-lettered; skipped")
    logger.success(f"Requeued {len(done)} record(s)")


@app.command("purge")
def purge(
    record_ids: Optional[List[str]] = typer.Argument(None, help="Ids to purge (default: all)"),
    archive: Optional[Path] = typer.Option(
        None, "--archive", help="Append purged records to this NDJSON file first"
    ),
    db: Path = db_opt(),
    dsn: Optional[str] = dsn_opt(),
):
    """Delete dead-lettered records."""
    ids = record_ids or None
    try:
        with _open_store(db, dsn) as store:
            if archive is None:
                purged = store.purge_dead_letters(ids)
            else:
                purged = asyncio.run(purge_into_archive(store, ids, DeadLetterArchive(archive)))
    except RelayError as e:
        _fail(e)
    logger.success(f"Purged {purged} dead letter(s)")


@app.command("recover")
def recover(
    older_than: float = typer.Option(
        300.0, "--older-than", help="Seconds a claim must be held to count as stale"
    ),
    db: Path = db_opt(),
    dsn: Optional[str] = dsn_opt(),
):
    """Revert stale in-flight records to pending."""
    try:
        with _open_store(db, dsn) as store:
            n = store.recover_stale_in_flight(older_than)
    except RelayError as e:
        _fail(e)
    logger.success(f"Recovered {n} record(s)")


@app.command("gc")
def gc(
    retention: float = typer.Option(
        86_400.0, "--retention", help="Keep delivered records this many seconds"
    ),
    db: Path = db_opt(),
    dsn: Optional[str] = dsn_opt(),
):
    """Delete delivered records older than the retention window."""
    try:
        with _open_store(db, dsn) as store:
            n = store.collect_garbage(retention)
    except RelayError as e:
        _fail(e)
    logger.success(f"Removed {n} delivered record(s)")


@app.command("drain")
def drain(
    sink_url: Optional[str] = typer.Option(
        None, "--sink-url", envvar="RELAY_SINK_URL", help="HTTP endpoint receiving records"
    ),
    max_cycles: int = typer.Option(100, "--max-cycles"),
    db: Path = db_opt(),
    dsn: Optional[str] = dsn_opt(),
):
    """Deliver everything that is due now, then exit.

    Safe next to a running service: only claims older than the stale window
    are recovered.
    """
    if not sink_url:
        logger.error("No sink URL: pass --sink-url or set RELAY_SINK_URL")
        sys.exit(2)
    settings = get_settings()

    async def _run(store: RecordStore) -> int:
        delivered = 0
        async with HttpSinkClient(sink_url, timeout=settings.attempt_timeout_sec) as sink:
            queue = DeliveryQueue.from_settings(sink, settings, store=store, exclusive=False)
            for _ in range(max_cycles):
                report = await queue.force_sync_now()
                delivered += report.delivered
                if report.skipped or report.claimed == 0:
                    break
            h = queue.health()
        logger.info(
            f"pending={h.pending} dead_letters={h.dead_letters} circuit={h.circuit_state}"
        )
        return delivered

    try:
        with _open_store(db, dsn) as store:
            delivered = asyncio.run(_run(store))
    except RelayError as e:
        _fail(e)
    logger.success(f"Delivered {delivered} record(s)")


if __name__ == "__main__":
    app()
