#!/usr/bin/env python3
"""
Battle notifier: delivers unread battles to the subscribers tracking them.

A scan takes the oldest unread battles, marks them read *before* anything is
sent (a failed delivery is never retried, but a battle is never announced
twice either), matches them against every subscriber and posts the matches
one by one, each delivery bounded by config.DELIVERY_TIMEOUT.
"""

from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from asyncio import wait_for, TimeoutError, CancelledError

from config import config, get_logger
from delivery import WebhookSender
from errors import DeliveryError, StoreWriteError
from matcher import match_battles_by_subscriber
from messages import render_battle
from models import DatabaseQueue
from subscribers import Subscriber, SubscriberDirectory
from telemetry import init_telemetry, get_tracer, trace_span

logger = get_logger("notifier")
init_telemetry("battle-notifier-notifier")
_tracer = get_tracer("notifier")

Sender = Callable[[Subscriber, Dict[str, Any], str], Awaitable[Any]]
Renderer = Callable[[Dict[str, Any], str], Dict[str, Any]]


class DispatchReport:
    """Outcome of one notification scan."""

    def __init__(self):
        self.read = 0
        self.matched: Dict[str, int] = {}
        self.sent = 0
        self.failed = 0

    def __repr__(self) -> str:
        return (f"DispatchReport(read={self.read}, subscribers={len(self.matched)}, "
                f"sent={self.sent}, failed={self.failed})")


class BattleNotifier:
    """Matches unread battles to subscribers and delivers them."""

    def __init__(self, db: Optional[DatabaseQueue] = None, directory: Optional[SubscriberDirectory] = None,
                 send: Optional[Sender] = None, render: Optional[Renderer] = None) -> None:
        self.db = db
        self.directory = directory
        self.send = send
        self.render = render or render_battle
        self._owns_db = db is None

    async def initialize(self) -> None:
        """Initialize the database connection and load subscribers."""
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
        await self.db.start()
        if self.directory is None:
            self.directory = SubscriberDirectory()
        logger.info("BattleNotifier initialized")

    @trace_span("collect_battles_by_subscriber", tracer_name="notifier")
    async def collect_battles_by_subscriber(self, subscriber_ids: Optional[Iterable[str]] = None, report: Optional[DispatchReport] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Read the unread batch, mark it read and match it per subscriber.

        Args:
            subscriber_ids: Subscribers to consider, in processing order
                            (defaults to every subscriber in the directory)
            report: Optional report to record the read count into

        Returns:
            Mapping of subscriber id to matched battles (oldest first)
        """
        battles = await self.db.execute('query_unread_battles', limit=config.UNREAD_BATCH_LIMIT)
        if not battles:
            logger.debug("No new battles to notify.")
            return {}

        # Set battles as read before sending to ensure no double battle notification
        try:
            result = await self.db.execute('mark_battles_read', battle_ids=[b['id'] for b in battles])
        except StoreWriteError as e:
            logger.error(f"Unable to mark battles as read, skipping notification [{e}]")
            return {}

        if result.failed:
            # Still unread: the next sync may prune them, so they go out now and may be sent twice
            logger.warning(f"{len(result.failed)} battles could not be marked as read; notifying them anyway")
        logger.info(f"Notify success. (Battles read: {result.modified_count}).")
        if report is not None:
            report.read = result.modified_count

        ids = list(subscriber_ids) if subscriber_ids is not None else self.directory.active_ids()
        configs = self.directory.get_configs(ids)
        return match_battles_by_subscriber(battles, configs, ids)

    async def _deliver(self, subscriber: Subscriber, battle: Dict[str, Any], report: DispatchReport) -> None:
        try:
            payload = self.render(battle, subscriber.lang)
            await wait_for(self.send(subscriber, payload, config.NOTIFY_CHANNEL), timeout=config.DELIVERY_TIMEOUT)
            report.sent += 1
        except TimeoutError:
            report.failed += 1
            logger.error(f"Error while sending battle {battle['id']} [timed out after {config.DELIVERY_TIMEOUT}s]")
        except DeliveryError as e:
            report.failed += 1
            logger.error(f"Error while sending battle {battle['id']} [{e}]")
        except CancelledError:
            raise
        except Exception as e:
            # A broken payload or sender bug must not stop the remaining deliveries
            report.failed += 1
            logger.error(f"Unexpected error while sending battle {battle['id']} [{e.__class__.__name__}: {e}]")

    @trace_span("dispatch", tracer_name="notifier")
    async def dispatch(self, battles_by_subscriber: Dict[str, List[Dict[str, Any]]], report: Optional[DispatchReport] = None) -> DispatchReport:
        """Deliver matched battles, subscriber by subscriber, in order."""
        report = report or DispatchReport()
        remaining = len(battles_by_subscriber)
        for subscriber_id, battles in battles_by_subscriber.items():
            remaining -= 1
            subscriber = self.directory.get(subscriber_id)
            if subscriber is None or not battles:
                continue
            report.matched[subscriber_id] = len(battles)
            logger.info(f"Sending {len(battles)} new battles to subscriber \"{subscriber.name}\". {remaining} subscribers remaining.")
            for battle in battles:
                await self._deliver(subscriber, battle, report)
        return report

    @trace_span("scan", tracer_name="notifier")
    async def scan(self, subscriber_ids: Optional[Iterable[str]] = None) -> DispatchReport:
        """Run one notification cycle."""
        logger.info("Notifying new battles to all subscribers.")
        report = DispatchReport()
        battles_by_subscriber = await self.collect_battles_by_subscriber(subscriber_ids, report=report)
        if not battles_by_subscriber:
            logger.info("No new battles to notify.")
            return report
        return await self.dispatch(battles_by_subscriber, report)

    async def run(self) -> DispatchReport:
        """Run one scan, delivering through webhooks unless a sender was injected."""
        if self.send is not None:
            return await self.scan()
        async with WebhookSender() as sender:
            self.send = sender.send
            try:
                return await self.scan()
            finally:
                self.send = None

    async def close(self) -> None:
        """Close connections and clean up resources."""
        if self.db and self._owns_db:
            await self.db.stop()
        logger.info("BattleNotifier closed")

