#!/usr/bin/env python3
"""
Data model and storage for the Feed Aggregator.

This module contains the persisted item record shape, the UI-facing helpers
that toggle read/starred flags, and an async key-value store backed by SQLite.
The store only offers whole-value get/set; merging happens in aggregator.py.
"""

from os import path
from time import time
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import StoreError
from telemetry import trace_span

logger = get_logger("models")

# Store keys shared with the presentation layer
ITEMS_KEY = "aggregated-rss"
RETENTION_KEY = "retention-days"

# Flags the presentation layer may toggle; everything else is frozen at merge time
MUTABLE_FLAGS = ("read", "starred")

ItemRecord = Dict[str, Any]
ItemMap = Dict[str, ItemRecord]

# Whole-value JSON documents keyed by name; updated_at is epoch seconds
SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);
"""


def new_item_record(link: str, entry: Dict[str, Any], feed_url: str, datetime_ms: int) -> ItemRecord:
    """Build a persisted item record from a fetched entry."""
    return {
        'title': entry.get('title') or "",
        'url': link,
        'description': entry.get('description') or "",
        'datetime': int(datetime_ms),
        'feedUrl': feed_url,
        'read': False,
        'starred': False,
    }


def set_item_flag(items: ItemMap, url: str, flag: str, value: Optional[bool] = None) -> bool:
    """Set (or toggle, when value is None) a read/starred flag on one record.

    Returns:
        The new flag value.

    Raises:
        ValueError: If the flag is not user-mutable.
        KeyError: If no record exists for the url.
    """
    if flag not in MUTABLE_FLAGS:
        raise ValueError(f"Flag '{flag}' cannot be changed; expected one of {', '.join(MUTABLE_FLAGS)}")
    record = items[url]
    new_value = (not record.get(flag, False)) if value is None else bool(value)
    record[flag] = new_value
    return new_value


def sorted_items(items: ItemMap, unread_only: bool = False, starred_only: bool = False) -> List[ItemRecord]:
    """Return records newest first, optionally filtered."""
    records = [
        record for record in items.values()
        if not (unread_only and record.get('read'))
        and not (starred_only and not record.get('starred'))
    ]
    return sorted(records, key=lambda record: record.get('datetime', 0), reverse=True)


def initialize_database(conn) -> None:
    """Create the key-value table if it does not exist yet."""
    cursor = conn.cursor()
    try:
        cursor.executescript(SCHEMA)
        conn.commit()
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


class KeyValueStore:
    """Async whole-value key-value store backed by SQLite.

    All SQLite work runs on a single worker task fed by a queue, so operations
    are applied one at a time in submission order.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DATABASE_PATH
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        initialize_database(self.conn)

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug("Store worker started")

    async def stop(self) -> None:
        """Stop the worker and close the database."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anybody still waiting on a result
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.debug("Store worker stopped")

    async def __aenter__(self) -> "KeyValueStore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _worker(self) -> None:
        """Worker coroutine processing store operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, f"_op_{operation_name}", None)
                    if method is None:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except (Error, ValueError, TypeError) as e:
                    logger.error(f"Store operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Store worker cancelled")
                break

    @trace_span(
        "store.execute",
        tracer_name="store",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "store.key": str(params.get("key", "")),
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Queue an operation for the worker and wait for its result."""
        key = str(params.get("key", ""))
        if not self.running:
            raise StoreError(key, "store is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StoreError(key, "store stopped before the operation completed")
            if "error" in result:
                raise StoreError(key, result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    async def get(self, key: str) -> Any:
        """Return the value stored under key, or None when absent."""
        return await self.execute('get_value', key=key)

    async def set(self, key: str, value: Any) -> None:
        """Replace the whole value stored under key."""
        await self.execute('set_value', key=key, value=value)

    # Worker-side operations
    def _op_get_value(self, key: str) -> Any:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = cursor.fetchone()
            return json.loads(row['value']) if row else None
        finally:
            cursor.close()

    def _op_set_value(self, key: str, value: Any) -> bool:
        payload = json.dumps(value)
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, payload, int(time())),
            )
            self.conn.commit()
            return True
        except Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()
