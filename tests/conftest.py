import os

# Keep test runs from installing OpenTelemetry instrumentation
os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest
import pytest_asyncio

from models import DatabaseQueue


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "battles.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


@pytest.fixture
def make_battle():
    def _make(battle_id, fame=1000, players=None, guilds=None, alliances=None, **extra):
        battle = {
            'id': battle_id,
            'totalFame': fame,
            'players': {p: {'name': p} for p in (players or [])},
            'guilds': {g: {'name': g} for g in (guilds or [])},
            'alliances': {a: {'name': a} for a in (alliances or [])},
        }
        battle.update(extra)
        return battle
    return _make
