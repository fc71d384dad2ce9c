import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from change_queue import ChangeQueue
from db import AsyncDatabase, ChangeQueueRepository
from models import SyncOperation


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.mark.asyncio
async def test_enqueue_deduplicates(db_path):
    async with AsyncDatabase(db_path) as db:
        repo = ChangeQueueRepository(db)
        queue = ChangeQueue(repo)

        assert await queue.enqueue("workout", "1", SyncOperation.INSERT)
        first = await repo.get("workout", "1", SyncOperation.INSERT)
        assert await queue.enqueue("workout", 1, "INSERT")
        second = await repo.get("workout", "1", SyncOperation.INSERT)

        entries = await repo.fetch_all_entries()
        assert len(entries) == 1
        assert second.id == first.id
        assert second.timestamp > first.timestamp
        assert not second.synced


@pytest.mark.asyncio
async def test_operations_are_separate_entries(db_path):
    async with AsyncDatabase(db_path) as db:
        queue = ChangeQueue(ChangeQueueRepository(db))
        await queue.enqueue("goal", "3", SyncOperation.INSERT)
        await queue.enqueue("goal", "3", SyncOperation.UPDATE)
        await queue.enqueue("goal", "3", SyncOperation.DELETE)
        pending = await queue.pending()
        assert [e.operation for e in pending] == [
            SyncOperation.INSERT,
            SyncOperation.UPDATE,
            SyncOperation.DELETE,
        ]
        assert await queue.pending_count() == 3
        assert len(await queue.pending(limit=2)) == 2


@pytest.mark.asyncio
async def test_enqueue_failure_is_swallowed(db_path):
    async with AsyncDatabase(db_path) as db:
        queue = ChangeQueue(ChangeQueueRepository(db))
        assert not await queue.enqueue("workout", "1", "MERGE")

        await db.close()
        assert not await queue.enqueue("workout", "1", SyncOperation.INSERT)


@pytest.mark.asyncio
async def test_mark_synced_and_requeue(db_path):
    async with AsyncDatabase(db_path) as db:
        repo = ChangeQueueRepository(db)
        queue = ChangeQueue(repo)
        await queue.enqueue("workout", "1", SyncOperation.INSERT)
        await queue.enqueue("workout", "2", SyncOperation.INSERT)
        ids = [e.id for e in await queue.pending()]

        assert await queue.mark_synced(ids[:1]) == 1
        assert await queue.mark_synced([]) == 0
        assert [e.record_id for e in await queue.pending()] == ["2"]

        await queue.enqueue("workout", "1", SyncOperation.INSERT)
        assert await queue.pending_count() == 2


@pytest.mark.asyncio
async def test_mark_failed_counts_retries(db_path):
    async with AsyncDatabase(db_path) as db:
        repo = ChangeQueueRepository(db)
        queue = ChangeQueue(repo)
        await queue.enqueue("streak", "u1", SyncOperation.UPDATE)
        entry = (await queue.pending())[0]

        assert await queue.mark_failed(entry.id, "offline")
        assert await queue.mark_failed(entry.id, "timeout")
        assert not await queue.mark_failed(9999, "missing")

        entry = await repo.get("streak", "u1", SyncOperation.UPDATE)
        assert entry.retry_count == 2
        assert entry.last_error == "timeout"
        assert not entry.synced

        await queue.enqueue("streak", "u1", SyncOperation.UPDATE)
        entry = await repo.get("streak", "u1", SyncOperation.UPDATE)
        assert entry.retry_count == 0
        assert entry.last_error is None


@pytest.mark.asyncio
async def test_purge_removes_only_old_synced(db_path):
    async with AsyncDatabase(db_path) as db:
        repo = ChangeQueueRepository(db)
        queue = ChangeQueue(repo, retention_days=7)
        await repo.upsert("workout", "old", SyncOperation.INSERT, 1_000)
        await repo.upsert("workout", "stale", SyncOperation.INSERT, 2_000)
        await queue.enqueue("workout", "new", SyncOperation.INSERT)
        entries = {e.record_id: e.id for e in await repo.fetch_all_entries()}
        await queue.mark_synced([entries["old"], entries["new"]])

        assert await queue.purge_synced() == 1
        remaining = sorted(e.record_id for e in await repo.fetch_all_entries())
        assert remaining == ["new", "stale"]

        assert await queue.purge_synced(older_than_days=-1) == 1
        assert [e.record_id for e in await repo.fetch_all_entries()] == ["stale"]
