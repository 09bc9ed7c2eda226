#!/usr/bin/env python3
"""
Battle fetcher: catch-up synchronization of the gameinfo battle feed.

The feed is served newest-first and paginated by offset. Starting from the
most recent page, the fetcher walks backwards until it meets the highest
battle id already stored (the high-water mark), then inserts everything newer
in chronological order and prunes battles that have already been notified.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
from aiohttp import ClientSession

from config import config, get_logger
from errors import StoreWriteError, TransportError
from gameinfo import fetch_battles_page
from models import DatabaseQueue
from telemetry import init_telemetry, get_tracer, trace_span
from utils import RetryHelper

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("battle-notifier-fetcher")
_tracer = get_tracer("fetcher")

PageFetcher = Callable[..., Awaitable[List[Dict[str, Any]]]]


class SyncReport:
    """Outcome of one synchronization cycle."""

    def __init__(self, latest_id: int = 0, fetched: int = 0, inserted: int = 0, pruned: int = 0, aborted: bool = False):
        self.latest_id = latest_id
        self.fetched = fetched
        self.inserted = inserted
        self.pruned = pruned
        self.aborted = aborted

    def __repr__(self) -> str:
        return (f"SyncReport(latest_id={self.latest_id}, fetched={self.fetched}, "
                f"inserted={self.inserted}, pruned={self.pruned}, aborted={self.aborted})")


def scan_page(page: List[Dict[str, Any]], latest_id: int, seen: Optional[Set[int]] = None) -> Tuple[List[Dict[str, Any]], bool]:
    """Collect the battles of a newest-first page that are newer than `latest_id`.

    Scanning stops at the first battle at or below the high-water mark.

    Returns:
        (accepted battles in page order, whether the high-water mark was reached)
    """
    accepted: List[Dict[str, Any]] = []
    for battle in page:
        battle_id = battle.get('id') if isinstance(battle, dict) else None
        if isinstance(battle_id, bool) or not isinstance(battle_id, int):
            logger.warning(f"Skipping battle without a valid id: {battle_id!r}")
            continue
        if battle_id <= latest_id:
            return accepted, True
        # Offsets shift when new battles arrive mid-walk, so pages can overlap
        if seen is not None:
            if battle_id in seen:
                continue
            seen.add(battle_id)
        accepted.append(battle)
    return accepted, False


class BattleFetcher:
    """Synchronizes new battles from the gameinfo API into the database."""

    def __init__(self, db: Optional[DatabaseQueue] = None, fetch_page: Optional[PageFetcher] = None) -> None:
        self.db = db
        self.fetch_page = fetch_page or fetch_battles_page
        self.retry_helper = RetryHelper(max_retries=config.FETCH_MAX_RETRIES, base_delay=config.FETCH_RETRY_DELAY)
        self._owns_db = db is None

    async def initialize(self) -> None:
        """Initialize the database connection."""
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
        await self.db.start()
        logger.info("BattleFetcher initialized")

    async def _fetch_page_with_retry(self, offset: int, session: Optional[ClientSession]) -> List[Dict[str, Any]]:
        """Fetch the page at `offset`, retrying the same offset on transport errors."""
        attempt = 0
        while True:
            try:
                return await self.fetch_page(
                    offset=offset,
                    limit=config.BATTLES_PAGE_SIZE,
                    sort=config.BATTLES_SORT,
                    session=session,
                )
            except TransportError as e:
                if not self.retry_helper.should_retry(attempt):
                    logger.error(f"Giving up on battles page at offset {offset} after {attempt} retries [{e}]")
                    raise
                logger.error(f"Unable to fetch battle data from API at offset {offset} [{e}]. Retrying in {self.retry_helper.calculate_delay(attempt)}s")
                await self.retry_helper.sleep_for_attempt(attempt)
                attempt += 1

    @trace_span(
        "fetch_battles_since",
        tracer_name="fetcher",
        attr_from_args=lambda self, latest_id, session=None: {"battles.latest_id": latest_id},
    )
    async def fetch_battles_since(self, latest_id: int, session: Optional[ClientSession] = None) -> List[Dict[str, Any]]:
        """Walk the feed from the newest page until `latest_id` is reached.

        Stops early at config.BATTLES_MAX_OFFSET, returning whatever has been
        collected so far.

        Returns:
            Battles newer than `latest_id`, oldest first.
        """
        pages: List[List[Dict[str, Any]]] = []
        seen: Set[int] = set()
        offset = 0

        while True:
            if offset >= config.BATTLES_MAX_OFFSET:
                logger.warning(f"Maximum offset {config.BATTLES_MAX_OFFSET} reached before battle {latest_id}; keeping what was fetched")
                break

            page = await self._fetch_page_with_retry(offset, session)
            accepted, found_latest = scan_page(page, latest_id, seen)
            pages.append(accepted)

            if found_latest:
                break
            if not page:
                logger.debug(f"Empty page at offset {offset}; end of feed")
                break
            offset += config.BATTLES_PAGE_SIZE

        # Pages and their contents are newest-first
        return [battle for accepted in reversed(pages) for battle in reversed(accepted)]

    @trace_span("sync", tracer_name="fetcher")
    async def sync(self, session: Optional[ClientSession] = None) -> SyncReport:
        """Run one synchronization cycle: fetch, insert, prune."""
        report = SyncReport()

        report.latest_id = await self.db.execute('latest_battle_id')
        if report.latest_id == 0:
            logger.info("No latest battle found. Retrieving first battles.")
        logger.info(f"Fetching Albion Online battles from API up to battle {report.latest_id}.")

        try:
            battles = await self.fetch_battles_since(report.latest_id, session=session)
        except TransportError as e:
            logger.error(f"Battle sync aborted, nothing inserted [{e}]")
            report.aborted = True
            return report

        report.fetched = len(battles)
        if battles:
            logger.debug(f"Performing {len(battles)} write operations in database.")
            try:
                result = await self.db.execute('insert_new_battles', battles=battles)
                report.inserted = result.inserted_count
                if result.failed:
                    logger.warning(f"{len(result.failed)} battles could not be inserted")
            except StoreWriteError as e:
                logger.error(f"Unable to write new battles [{e}]")
        else:
            logger.debug("No new battles.")

        try:
            report.pruned = await self.db.execute('prune_read_battles')
        except StoreWriteError as e:
            logger.error(f"Unable to delete old battles [{e}]")

        logger.info(f"Fetch success. (New battles inserted: {report.inserted}, old battles removed: {report.pruned}).")
        return report

    async def run(self) -> SyncReport:
        """Run one sync cycle with a dedicated HTTP session."""
        async with ClientSession() as session:
            return await self.sync(session=session)

    async def close(self) -> None:
        """Close connections and clean up resources."""
        if self.db and self._owns_db:
            await self.db.stop()
        logger.info("BattleFetcher closed")

