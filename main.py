#!/usr/bin/env python3
"""
Feed Aggregator command line.

Runs the aggregation loop (scheduled or single cycle) and exposes the same
read/star toggles the presentation layer uses, all through the key-value
store:

    python main.py run                 # tick forever
    python main.py once                # one cycle, ignoring recheck history
    python main.py status              # item counts and settings
    python main.py list --unread       # newest first
    python main.py star https://example.com/post
    python main.py retention 14
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from aggregator import load_items, load_retention_days
from config import config, get_logger
from fetcher import FeedFetcher, FetchBatchRunner
from models import ITEMS_KEY, RETENTION_KEY, KeyValueStore, set_item_flag, sorted_items
from notifier import build_notifier
from scheduler import CycleScheduler, SchedulerContext
from sources import build_source_lister
from telemetry import init_telemetry
from utils import format_timestamp_ms, truncate_string

logger = get_logger("orchestrator")

FLAG_COMMANDS = {
    'read': ('read', True),
    'unread': ('read', False),
    'star': ('starred', True),
    'unstar': ('starred', False),
}


class AggregatorOrchestrator:
    """Wires the lister, fetcher, store and notifier into a scheduler."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or config.DATABASE_PATH

    def build_scheduler(self, store: KeyValueStore, fetcher: FeedFetcher) -> CycleScheduler:
        context = SchedulerContext(store, build_notifier())
        runner = FetchBatchRunner(fetcher.fetch)
        return CycleScheduler(build_source_lister(), runner, context)

    async def run_scheduled(self) -> None:
        """Run cycles until cancelled."""
        logger.info(f"Configuration: {config.get_config_summary()}")
        fetcher = FeedFetcher()
        async with KeyValueStore(self.db_path) as store:
            scheduler = self.build_scheduler(store, fetcher)
            try:
                await scheduler.run_forever()
            except asyncio.CancelledError:
                logger.info("Scheduler task was cancelled")
            finally:
                scheduler.stop()
                await fetcher.close()

    async def run_once(self) -> bool:
        """Run a single cycle with a fresh context, so every source is due."""
        fetcher = FeedFetcher()
        try:
            async with KeyValueStore(self.db_path) as store:
                scheduler = self.build_scheduler(store, fetcher)
                report = await scheduler.run_cycle()
        finally:
            await fetcher.close()
        for failure in report.batch.errors:
            logger.warning(f"Source failed: {failure.url}: {failure.error}")
        logger.info(f"Single run complete: {report}")
        return True

    async def check_status(self) -> Dict[str, Any]:
        async with KeyValueStore(self.db_path) as store:
            items = await load_items(store)
            retention_days = await load_retention_days(store)
        sources = await build_source_lister().list_sources()
        newest = max((record.get('datetime', 0) for record in items.values()), default=None)
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'database_path': self.db_path,
            'total_items': len(items),
            'unread_items': sum(1 for record in items.values() if not record.get('read')),
            'starred_items': sum(1 for record in items.values() if record.get('starred')),
            'newest_item': format_timestamp_ms(newest) if newest else None,
            'retention_days': retention_days,
            'source_count': len(set(sources)),
        }

    def print_status(self, status: Dict[str, Any]) -> None:
        print(f"\nFeed Aggregator Status ({status['timestamp']})")
        print(f"  Database:   {status['database_path']}")
        print(f"  Sources:    {status['source_count']}")
        print(f"  Items:      {status['total_items']} ({status['unread_items']} unread, {status['starred_items']} starred)")
        print(f"  Newest:     {status['newest_item'] or 'n/a'}")
        print(f"  Retention:  {status['retention_days']} days")

    async def list_items(self, unread_only: bool = False, starred_only: bool = False) -> List[Dict[str, Any]]:
        async with KeyValueStore(self.db_path) as store:
            items = await load_items(store)
        return sorted_items(items, unread_only=unread_only, starred_only=starred_only)

    def print_items(self, records: List[Dict[str, Any]]) -> None:
        for record in records:
            marks = ("*" if record.get('starred') else " ") + (" " if record.get('read') else "N")
            print(f"{marks} {format_timestamp_ms(record.get('datetime'))}  {truncate_string(record.get('title') or '(untitled)', 80)}")
            print(f"     {record.get('url')}")
        print(f"\n{len(records)} items")

    async def set_flag(self, url: str, flag: str, value: bool) -> bool:
        """Flip read/starred on one record and write the whole map back."""
        async with KeyValueStore(self.db_path) as store:
            items = await load_items(store)
            try:
                set_item_flag(items, url, flag, value)
            except KeyError:
                logger.error(f"No item stored for {url}")
                return False
            await store.set(ITEMS_KEY, items)
        logger.info(f"Set {flag}={value} for {url}")
        return True

    async def set_retention(self, days: int) -> bool:
        if days < 1:
            logger.error("Retention must be at least 1 day")
            return False
        async with KeyValueStore(self.db_path) as store:
            await store.set(RETENTION_KEY, days)
        logger.info(f"Retention set to {days} days")
        return True


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Feed Aggregator')
    parser.add_argument('mode', choices=['run', 'once', 'status', 'list', 'retention', *FLAG_COMMANDS],
                        help='Operation mode')
    parser.add_argument('value', nargs='?',
                        help='Item URL for read/unread/star/unstar, number of days for retention')
    parser.add_argument('--unread', action='store_true', help='list: only unread items')
    parser.add_argument('--starred', action='store_true', help='list: only starred items')
    parser.add_argument('--database', type=str, help='SQLite database path (overrides DATABASE_PATH)')

    args = parser.parse_args()

    init_telemetry("feed-aggregator")
    orchestrator = AggregatorOrchestrator(args.database)

    try:
        if args.mode == 'run':
            asyncio.run(orchestrator.run_scheduled())

        elif args.mode == 'once':
            success = asyncio.run(orchestrator.run_once())
            sys.exit(0 if success else 1)

        elif args.mode == 'status':
            orchestrator.print_status(asyncio.run(orchestrator.check_status()))

        elif args.mode == 'list':
            orchestrator.print_items(asyncio.run(orchestrator.list_items(args.unread, args.starred)))

        elif args.mode == 'retention':
            try:
                days = int(args.value)
            except (TypeError, ValueError):
                parser.error("retention needs a whole number of days")
            sys.exit(0 if asyncio.run(orchestrator.set_retention(days)) else 1)

        else:
            if not args.value:
                parser.error(f"{args.mode} needs an item URL")
            flag, value = FLAG_COMMANDS[args.mode]
            sys.exit(0 if asyncio.run(orchestrator.set_flag(args.value, flag, value)) else 1)

    except KeyboardInterrupt:
        logger.info("Feed aggregator shutting down")
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
