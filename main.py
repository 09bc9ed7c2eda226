#!/usr/bin/env python3
"""
Battle Notifier Orchestrator

Runs the pipeline in the correct sequence:
1. Synchronize new battles from the gameinfo API into the database
2. Notify subscribers of unread battles involving their tracked entities

Supports single-run mode, a fixed-interval loop, and a status report.
"""

import asyncio
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
import sqlite3
import argparse

from config import config, get_logger
from errors import StoreError
from fetcher import BattleFetcher
from models import DatabaseQueue
from notifier import BattleNotifier
from subscribers import SubscriberDirectory
from telemetry import init_telemetry, get_tracer, trace_span

# Module-specific logger
logger = get_logger("orchestrator")
init_telemetry("battle-notifier-orchestrator")
_tracer = get_tracer("orchestrator")


class BattleOrchestrator:
    """Orchestrates the sync and notify cycles over a shared database worker."""

    def __init__(self, db: Optional[DatabaseQueue] = None, directory: Optional[SubscriberDirectory] = None) -> None:
        self.db = db or DatabaseQueue(config.DATABASE_PATH)
        self.directory = directory
        self.fetcher = BattleFetcher(db=self.db)
        self.notifier = BattleNotifier(db=self.db, directory=directory)

    async def initialize(self) -> None:
        await self.db.start()
        await self.fetcher.initialize()
        await self.notifier.initialize()

    async def close(self) -> None:
        await self.db.stop()

    async def run_fetcher(self) -> bool:
        """Run the battle sync step."""
        logger.info("📡 Running battle fetcher")
        try:
            report = await self.fetcher.run()
            logger.info(f"✅ Battle fetcher completed: {report}")
            return not report.aborted
        except StoreError as e:
            logger.error(f"❌ Battle fetcher failed: {e}")
            return False

    async def run_notifier(self) -> bool:
        """Run the notification step."""
        logger.info("📣 Running battle notifier")
        try:
            report = await self.notifier.run()
            logger.info(f"✅ Battle notifier completed: {report}")
            return True
        except StoreError as e:
            logger.error(f"❌ Battle notifier failed: {e}")
            return False

    @trace_span("pipeline.run", tracer_name="orchestrator")
    async def run_pipeline(self) -> bool:
        """Run sync then notify. A failed sync still lets pending battles be notified."""
        start_time = time.time()
        fetched = await self.run_fetcher()
        notified = await self.run_notifier()
        logger.info(f"🎉 Pipeline completed in {time.time() - start_time:.1f}s")
        return fetched and notified

    async def run_forever(self, interval_seconds: int) -> None:
        """Run the pipeline every `interval_seconds` until cancelled."""
        logger.info(f"🕐 Running every {interval_seconds}s")
        while True:
            started = time.time()
            try:
                await self.run_pipeline()
                if self.directory is not None:
                    self.directory.reload()
            except Exception as e:
                logger.exception(f"❌ Cycle failed, retrying in {interval_seconds}s: {e}")
            await asyncio.sleep(max(interval_seconds - (time.time() - started), 0))


def check_status() -> dict:
    """Collect database and subscriber status information."""
    status = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'checks': {},
    }

    db_path = Path(config.DATABASE_PATH)
    if db_path.exists():
        try:
            conn = sqlite3.connect(db_path)
            try:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*), COALESCE(MAX(id), 0), COALESCE(SUM(read = 0), 0) FROM battles")
                total, latest, unread = cursor.fetchone()
            finally:
                conn.close()
            status['checks']['database'] = {
                'status': 'ok',
                'total_battles': total,
                'unread_battles': unread,
                'latest_battle_id': latest,
            }
        except sqlite3.Error as e:
            status['checks']['database'] = {'status': 'error', 'message': str(e)}
    else:
        status['checks']['database'] = {'status': 'missing', 'message': 'Database file not found'}

    directory = SubscriberDirectory()
    configured = [s for s in directory.subscribers.values() if s.tracking and not s.tracking.is_empty()]
    status['checks']['subscribers'] = {
        'total': len(directory.subscribers),
        'configured': len(configured),
    }

    status['overall_status'] = 'healthy' if status['checks']['database']['status'] == 'ok' else 'issues_detected'
    return status


def print_status(status: dict):
    """Print formatted status information."""
    print("\n📊 Battle Notifier Status")
    print(f"⏰ {status['timestamp']}")
    print(f"🏥 Overall: {status['overall_status'].upper()}")

    db = status['checks']['database']
    if db['status'] == 'ok':
        print("\n💾 Database:")
        print(f"   ⚔️  Battles: {db['total_battles']}")
        print(f"   ⏳ Unread: {db['unread_battles']}")
        print(f"   🔖 Latest battle: {db['latest_battle_id']}")
    else:
        print(f"\n💾 Database: {db['status'].upper()} - {db.get('message', 'Unknown error')}")

    subs = status['checks']['subscribers']
    print(f"\n👥 Subscribers: {subs['total']} ({subs['configured']} tracking something)")


async def _run(mode: str, interval: int) -> bool:
    orchestrator = BattleOrchestrator(directory=SubscriberDirectory())
    await orchestrator.initialize()
    try:
        if mode == 'run':
            return await orchestrator.run_pipeline()
        if mode == 'fetch':
            return await orchestrator.run_fetcher()
        if mode == 'notify':
            return await orchestrator.run_notifier()
        await orchestrator.run_forever(interval)
        return True
    finally:
        await orchestrator.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Albion Online battle notifier')
    parser.add_argument('mode', choices=['run', 'fetch', 'notify', 'loop', 'status'],
                        help='Operation mode')
    parser.add_argument('--interval', type=int, default=config.SCAN_INTERVAL_SECONDS,
                        help='Seconds between cycles in loop mode')
    args = parser.parse_args()

    logger.debug(f"Configuration: {config.get_config_summary()}")

    try:
        if args.mode == 'status':
            print_status(check_status())
            return
        success = asyncio.run(_run(args.mode, args.interval))
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        logger.info("👋 Battle notifier shutting down")


if __name__ == "__main__":
    main()
