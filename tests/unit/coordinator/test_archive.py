"""
Unit tests for the dead-letter archive.
"""

import pytest

from durable_relay.coordinator import DeadLetterArchive
from durable_relay.coordinator.archive import purge_into_archive


def _dead_letter(store, *ids):
    for rid in ids:
        store.enqueue({"id": rid}, rid)
    store.claim_batch(len(ids))
    for rid in ids:
        store.mark_dead_letter(rid, "HTTP 422")


@pytest.mark.asyncio
async def test_save_and_replay(tmp_path, store):
    _dead_letter(store, "a", "b")
    archive = DeadLetterArchive(tmp_path / "dlq" / "archive.ndjson")

    await archive.save(store.list_dead_letters(), reason="purge", metadata={"by": "ops"})
    batches = await archive.replay()

    assert len(batches) == 1
    assert batches[0].reason == "purge"
    assert batches[0].metadata == {"by": "ops"}
    assert {d.id for d in batches[0].records} == {"a", "b"}
    assert batches[0].records[0].last_error == "HTTP 422"


@pytest.mark.asyncio
async def test_replay_missing_file_is_empty(tmp_path):
    archive = DeadLetterArchive(tmp_path / "none.ndjson")
    assert await archive.replay() == []


@pytest.mark.asyncio
async def test_replay_skips_corrupt_lines(tmp_path, store):
    _dead_letter(store, "a")
    path = tmp_path / "archive.ndjson"
    archive = DeadLetterArchive(path)
    await archive.save(store.list_dead_letters(), reason="purge")
    with path.open("a", encoding="utf-8") as f:
        f.write("{not json\n")
    await archive.save(store.list_dead_letters(), reason="purge")

    assert len(await archive.replay()) == 2
    assert len(await archive.replay(max_records=1)) == 1


@pytest.mark.asyncio
async def test_purge_into_archive_removes_only_archived(tmp_path, store):
    _dead_letter(store, "a", "b")
    store.enqueue({}, "live")
    archive = DeadLetterArchive(tmp_path / "archive.ndjson")

    purged = await purge_into_archive(store, ["a", "live", "missing"], archive)

    assert purged == 1
    assert store.get("a") is None
    assert store.get("live") is not None
    assert store.dead_letter_count() == 1
    batches = await archive.replay()
    assert [d.id for d in batches[0].records] == ["a"]
