import asyncio
import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import AsyncDatabase, UserRepository
from errors import TransactionFailure
from models import User


async def _user_count(db: AsyncDatabase) -> int:
    row = await db.fetch_one("SELECT COUNT(*) FROM users;")
    return row[0]


async def _insert_user(db: AsyncDatabase, user_id: str) -> None:
    await db.execute(
        "INSERT INTO users (user_id, first_name, last_name) VALUES (?, 'A', 'B');",
        (user_id,),
    )


@pytest.mark.asyncio
async def test_transaction_commits(tmp_path):
    async with AsyncDatabase(str(tmp_path / "t.db")) as db:
        async with db.transaction():
            await _insert_user(db, "u1")
            await _insert_user(db, "u2")
        assert await _user_count(db) == 2
        assert not db.in_transaction


@pytest.mark.asyncio
async def test_rollback_leaves_no_partial_rows(tmp_path):
    async with AsyncDatabase(str(tmp_path / "t.db")) as db:
        with pytest.raises(RuntimeError):
            async with db.transaction():
                await _insert_user(db, "u1")
                raise RuntimeError("abort")
        assert await _user_count(db) == 0


@pytest.mark.asyncio
async def test_sqlite_error_becomes_transaction_failure(tmp_path):
    async with AsyncDatabase(str(tmp_path / "t.db")) as db:
        with pytest.raises(TransactionFailure) as info:
            async with db.transaction():
                await _insert_user(db, "u1")
                await _insert_user(db, "u1")
        assert not info.value.timed_out
        assert await _user_count(db) == 0

        with pytest.raises(TransactionFailure):
            await db.execute(
                "INSERT INTO workout (user_id, date) VALUES ('ghost', '2024-01-01');"
            )


@pytest.mark.asyncio
async def test_nested_transaction_joins_outer(tmp_path):
    async with AsyncDatabase(str(tmp_path / "t.db")) as db:
        with pytest.raises(ValueError):
            async with db.transaction() as outer:
                async with db.transaction() as inner:
                    assert inner is outer
                    await _insert_user(db, "u1")
                raise ValueError("outer fails")
        assert await _user_count(db) == 0


@pytest.mark.asyncio
async def test_after_commit_callbacks(tmp_path):
    calls = []

    async def record():
        calls.append("done")

    async with AsyncDatabase(str(tmp_path / "t.db")) as db:
        async with db.transaction():
            await db.after_commit(record)
            assert calls == []
        assert calls == ["done"]

        with pytest.raises(RuntimeError):
            async with db.transaction():
                await db.after_commit(record)
                raise RuntimeError("abort")
        assert calls == ["done"]

        await db.after_commit(record)
        assert calls == ["done", "done"]


@pytest.mark.asyncio
async def test_lock_timeout_reports_timed_out(tmp_path):
    async with AsyncDatabase(str(tmp_path / "t.db"), lock_timeout=0.05) as db:
        await db._lock.acquire()
        try:
            with pytest.raises(TransactionFailure) as info:
                async with db.transaction():
                    pass
            assert info.value.timed_out
        finally:
            db._lock.release()
        async with db.transaction():
            await _insert_user(db, "u1")
        assert await _user_count(db) == 1


@pytest.mark.asyncio
async def test_concurrent_writers_are_serialised(tmp_path):
    async with AsyncDatabase(str(tmp_path / "t.db")) as db:
        async def writer(n):
            async with db.transaction():
                await _insert_user(db, f"u{n}")
                await asyncio.sleep(0)
                await _insert_user(db, f"v{n}")

        await asyncio.gather(*(writer(n) for n in range(5)))
        assert await _user_count(db) == 10


@pytest.mark.asyncio
async def test_upsert_with_explicit_key(tmp_path):
    async with AsyncDatabase(str(tmp_path / "t.db")) as db:
        repo = UserRepository(db)
        await repo.upsert(User("u1", "Ada", "Lovelace"))
        await repo.upsert(User("u1", "Ada", "King", height_cm=170))
        user = await repo.get("u1")
        assert user.last_name == "King"
        assert user.height_cm == 170
        assert await _user_count(db) == 1


@pytest.mark.asyncio
async def test_not_connected(tmp_path):
    db = AsyncDatabase(str(tmp_path / "t.db"))
    with pytest.raises(RuntimeError):
        db.connection


@pytest.mark.asyncio
async def test_reader_never_sees_rolled_back_rows(tmp_path):
    async with AsyncDatabase(str(tmp_path / "t.db")) as db:
        inserted = asyncio.Event()

        async def writer():
            with pytest.raises(RuntimeError):
                async with db.transaction():
                    await _insert_user(db, "u1")
                    inserted.set()
                    await asyncio.sleep(0.05)
                    raise RuntimeError("abort")

        async def reader():
            await inserted.wait()
            return await _user_count(db)

        _, seen = await asyncio.gather(writer(), reader())
        assert seen == 0
        assert await _user_count(db) == 0

        async with db.transaction():
            await _insert_user(db, "u2")
            # Reads inside the transaction see its own rows.
            assert await _user_count(db) == 1
