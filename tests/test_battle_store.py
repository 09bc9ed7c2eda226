import asyncio

import pytest

from errors import StoreError, StoreWriteError
from models import DatabaseQueue


@pytest.mark.asyncio
async def test_latest_battle_id_tracks_highest_stored_id(db, make_battle):
    assert await db.execute('latest_battle_id') == 0

    result = await db.execute('insert_new_battles', battles=[make_battle(101), make_battle(103), make_battle(102)])
    assert result.inserted_count == 3
    assert await db.execute('latest_battle_id') == 103


@pytest.mark.asyncio
async def test_insert_is_idempotent_and_never_overwrites(db, make_battle):
    await db.execute('insert_new_battles', battles=[make_battle(5, fame=10)])
    await db.execute('mark_battles_read', battle_ids=[5])

    # Same id again with different content and an explicit unread flag
    result = await db.execute('insert_new_battles', battles=[dict(make_battle(5, fame=999), read=False)])
    assert result.inserted_count == 0
    assert result.outcomes[0].ok and not result.outcomes[0].changed

    assert await db.execute('count_battles') == 1
    row = db.conn.execute("SELECT read, total_fame FROM battles WHERE id = 5").fetchone()
    assert row['read'] == 1
    assert row['total_fame'] == 10
    assert await db.execute('query_unread_battles', limit=10) == []


@pytest.mark.asyncio
async def test_insert_is_best_effort_per_item(db, make_battle):
    result = await db.execute('insert_new_battles', battles=[make_battle(1), {'id': 'bogus'}, make_battle(2)])

    assert result.inserted_count == 2
    assert len(result.failed) == 1
    assert result.failed[0].battle_id == 'bogus'
    assert await db.execute('count_battles') == 2


@pytest.mark.asyncio
async def test_unread_battles_are_oldest_first_and_limited(db, make_battle):
    await db.execute('insert_new_battles', battles=[make_battle(3), make_battle(1), make_battle(2)])

    unread = await db.execute('query_unread_battles', limit=2)
    assert [b['id'] for b in unread] == [1, 2]
    assert all(b['read'] is False for b in unread)
    assert unread[0]['players'] == {}


@pytest.mark.asyncio
async def test_mark_read_is_one_way_and_idempotent(db, make_battle):
    await db.execute('insert_new_battles', battles=[make_battle(1), make_battle(2), make_battle(3)])

    first = await db.execute('mark_battles_read', battle_ids=[1, 2])
    second = await db.execute('mark_battles_read', battle_ids=[1, 2, 42])

    assert first.modified_count == 2
    assert second.modified_count == 0
    assert await db.execute('count_battles', read=True) == 2
    assert [b['id'] for b in await db.execute('query_unread_battles', limit=10)] == [3]


@pytest.mark.asyncio
async def test_prune_is_noop_without_read_battles(db, make_battle):
    await db.execute('insert_new_battles', battles=[make_battle(i) for i in range(1, 6)])

    assert await db.execute('prune_read_battles') == 0
    assert await db.execute('count_battles') == 5


@pytest.mark.asyncio
async def test_prune_deletes_everything_below_newest_read_battle(db, make_battle):
    await db.execute('insert_new_battles', battles=[make_battle(i) for i in range(1, 6)])
    await db.execute('mark_battles_read', battle_ids=[1, 2, 3])

    assert await db.execute('prune_read_battles') == 2

    remaining = [row[0] for row in db.conn.execute("SELECT id FROM battles ORDER BY id")]
    assert remaining == [3, 4, 5]
    # The newest read battle is kept, so the high-water mark survives pruning
    assert await db.execute('latest_battle_id') == 5


@pytest.mark.asyncio
async def test_failed_write_operation_raises_store_write_error(db):
    with pytest.raises(StoreWriteError):
        await db.execute('insert_new_battles', battles=5)


@pytest.mark.asyncio
async def test_unknown_operation_raises_store_error(db):
    with pytest.raises(StoreError) as excinfo:
        await db.execute('drop_everything')
    assert not isinstance(excinfo.value, StoreWriteError)
    assert excinfo.value.operation == 'drop_everything'


@pytest.mark.asyncio
async def test_unopenable_database_fails_fast_with_store_error(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "missing" / "dir" / "battles.db"))
    await queue.start()

    with pytest.raises(StoreError) as excinfo:
        await asyncio.wait_for(queue.execute('latest_battle_id'), timeout=3)
    assert "Database unavailable" in str(excinfo.value)

    # Once the worker is gone, later calls fail without queueing anything
    with pytest.raises(StoreWriteError):
        await asyncio.wait_for(queue.execute('prune_read_battles'), timeout=3)

    await queue.stop()


@pytest.mark.asyncio
async def test_execute_after_stop_raises_store_error(db):
    await db.stop()

    with pytest.raises(StoreError):
        await asyncio.wait_for(db.execute('latest_battle_id'), timeout=3)
