import asyncio

import pytest

from main import BattleOrchestrator
from models import DatabaseQueue


@pytest.mark.asyncio
async def test_loop_survives_unexpected_cycle_errors(db):
    orchestrator = BattleOrchestrator(db=db)
    calls = []

    async def flaky_pipeline():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("boom")
        if len(calls) == 3:
            raise asyncio.CancelledError()
        return True

    orchestrator.run_pipeline = flaky_pipeline

    with pytest.raises(asyncio.CancelledError):
        await orchestrator.run_forever(0)

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_one_shot_fetch_reports_store_failure(tmp_path):
    orchestrator = BattleOrchestrator(db=DatabaseQueue(str(tmp_path / "missing" / "battles.db")))
    await orchestrator.db.start()
    try:
        assert await orchestrator.run_fetcher() is False
    finally:
        await orchestrator.close()
