import asyncio

import pytest

from config import config
from errors import DeliveryError, StoreWriteError
from fetcher import BattleFetcher
from models import WriteOutcome
from notifier import BattleNotifier
from subscribers import Subscriber, SubscriberDirectory, TrackingConfig


class RecordingSender:
    """Delivery stub that records sends and fails on request."""

    def __init__(self, fail_ids=(), slow_ids=()):
        self.fail_ids = set(fail_ids)
        self.slow_ids = set(slow_ids)
        self.sent = []

    async def __call__(self, subscriber, payload, channel):
        if payload['id'] in self.slow_ids:
            await asyncio.sleep(5)
        if payload['id'] in self.fail_ids:
            raise DeliveryError("webhook returned 500", subscriber_id=subscriber.id)
        self.sent.append((subscriber.id, payload['id'], channel))


def render_stub(battle, lang):
    return {'id': battle['id'], 'lang': lang}


def make_directory(**tracked_players):
    return SubscriberDirectory(subscribers=[
        Subscriber(subscriber_id, tracking=TrackingConfig(players=players))
        for subscriber_id, players in tracked_players.items()
    ])


class FailingMarkDb:
    """Delegates to a real queue but fails the mark-read batch."""

    def __init__(self, db):
        self.db = db

    async def start(self):
        await self.db.start()

    async def execute(self, operation_name, **params):
        if operation_name == 'mark_battles_read':
            raise StoreWriteError("disk I/O error", operation=operation_name)
        return await self.db.execute(operation_name, **params)


@pytest.mark.asyncio
async def test_battles_are_read_before_dispatch_even_if_delivery_fails(db, make_battle):
    await db.execute('insert_new_battles', battles=[make_battle(1, players=["p1"]), make_battle(2)])
    sender = RecordingSender(fail_ids={1})
    notifier = BattleNotifier(db=db, directory=make_directory(g1=["p1"]), send=sender, render=render_stub)

    report = await notifier.scan()

    assert report.read == 2
    assert report.failed == 1
    assert sender.sent == []
    assert await db.execute('query_unread_battles', limit=1000) == []

    # A second scan has nothing left to send
    again = await notifier.scan()
    assert again.read == 0
    assert again.sent == 0


@pytest.mark.asyncio
async def test_delivery_failure_does_not_stop_remaining_sends(db, make_battle):
    await db.execute('insert_new_battles', battles=[make_battle(i, players=["p1"]) for i in (1, 2, 3)])
    sender = RecordingSender(fail_ids={2})
    directory = make_directory(g1=["p1"], g2=["p1"])
    notifier = BattleNotifier(db=db, directory=directory, send=sender, render=render_stub)

    report = await notifier.scan()

    assert report.sent == 4
    assert report.failed == 2
    assert report.matched == {"g1": 3, "g2": 3}
    assert sender.sent == [
        ("g1", 1, "battles"), ("g1", 3, "battles"),
        ("g2", 1, "battles"), ("g2", 3, "battles"),
    ]


@pytest.mark.asyncio
async def test_slow_delivery_times_out_and_dispatch_continues(db, make_battle, monkeypatch):
    monkeypatch.setattr(config, "DELIVERY_TIMEOUT", 0.05)
    await db.execute('insert_new_battles', battles=[make_battle(1, players=["p1"]), make_battle(2, players=["p1"])])
    sender = RecordingSender(slow_ids={1})
    notifier = BattleNotifier(db=db, directory=make_directory(g1=["p1"]), send=sender, render=render_stub)

    report = await notifier.scan()

    assert report.failed == 1
    assert report.sent == 1
    assert sender.sent == [("g1", 2, "battles")]


@pytest.mark.asyncio
async def test_unexpected_sender_errors_are_contained(db, make_battle):
    await db.execute('insert_new_battles', battles=[make_battle(1, players=["p1"]), make_battle(2, players=["p1"])])

    def broken_render(battle, lang):
        if battle['id'] == 1:
            raise KeyError('startTime')
        return render_stub(battle, lang)

    sender = RecordingSender()
    notifier = BattleNotifier(db=db, directory=make_directory(g1=["p1"]), send=sender, render=broken_render)

    report = await notifier.scan()

    assert report.failed == 1
    assert sender.sent == [("g1", 2, "battles")]


@pytest.mark.asyncio
async def test_failed_mark_read_skips_dispatch_and_keeps_battles_unread(db, make_battle):
    await db.execute('insert_new_battles', battles=[make_battle(1, players=["p1"])])
    sender = RecordingSender()
    notifier = BattleNotifier(db=FailingMarkDb(db), directory=make_directory(g1=["p1"]), send=sender, render=render_stub)

    report = await notifier.scan()

    assert report.sent == 0
    assert sender.sent == []
    assert [b['id'] for b in await db.execute('query_unread_battles', limit=10)] == [1]


@pytest.mark.asyncio
async def test_unconfigured_subscribers_receive_nothing(db, make_battle):
    await db.execute('insert_new_battles', battles=[make_battle(1, players=["p1"])])
    directory = SubscriberDirectory(subscribers=[Subscriber("g1")])
    sender = RecordingSender()
    notifier = BattleNotifier(db=db, directory=directory, send=sender, render=render_stub)

    report = await notifier.scan()

    assert report.read == 1
    assert report.matched == {}
    assert sender.sent == []


@pytest.mark.asyncio
async def test_end_to_end_sync_then_match(db, make_battle):
    async def feed(offset, limit, sort=None, session=None):
        if offset:
            return []
        return [
            make_battle(103, players=["p9"]),
            make_battle(102, players=["p1"]),
            make_battle(101, guilds=["g7"]),
        ]

    fetcher = BattleFetcher(db=db, fetch_page=feed)
    report = await fetcher.sync()

    assert report.inserted == 3
    assert await db.execute('latest_battle_id') == 103
    unread = await db.execute('query_unread_battles', limit=1000)
    assert [b['id'] for b in unread] == [101, 102, 103]

    notifier = BattleNotifier(db=db, directory=make_directory(guild1=["p1"]), send=RecordingSender(), render=render_stub)
    matched = await notifier.collect_battles_by_subscriber()

    assert {k: [b['id'] for b in v] for k, v in matched.items()} == {"guild1": [102]}


class PartialMarkDb(FailingMarkDb):
    """Delegates to a real queue but leaves some battles unmarked."""

    def __init__(self, db, unmarked_ids):
        super().__init__(db)
        self.unmarked_ids = set(unmarked_ids)

    async def execute(self, operation_name, **params):
        if operation_name == 'mark_battles_read':
            ids = [i for i in params['battle_ids'] if i not in self.unmarked_ids]
            result = await self.db.execute(operation_name, battle_ids=ids)
            result.outcomes.extend(
                WriteOutcome(i, False, False, "database is locked") for i in self.unmarked_ids
            )
            return result
        return await self.db.execute(operation_name, **params)


@pytest.mark.asyncio
async def test_battles_left_unread_by_mark_failure_are_still_sent_before_pruning(db, make_battle):
    await db.execute('insert_new_battles', battles=[make_battle(1, players=["p1"]), make_battle(2, players=["p1"])])
    sender = RecordingSender()
    notifier = BattleNotifier(db=PartialMarkDb(db, unmarked_ids={1}), directory=make_directory(g=["p1"]),
                              send=sender, render=render_stub)

    report = await notifier.scan()

    assert report.read == 1
    assert sender.sent == [("g", 1, "battles"), ("g", 2, "battles")]

    # The following sync prunes battle 1 although it was never marked read
    async def empty_feed(offset, limit, sort=None, session=None):
        return []

    sync_report = await BattleFetcher(db=db, fetch_page=empty_feed).sync()
    assert sync_report.pruned == 1
    assert [s[1] for s in sender.sent] == [1, 2]
