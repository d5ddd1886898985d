#!/usr/bin/env python3
"""
Item merge, retention and persistence for the Feed Aggregator.

One save folds a fetch batch into the persisted item map:

1. read the whole map (and the retention setting) from the store
2. sweep unstarred records at or before the retention cutoff
3. merge entries whose link is new and whose timestamp is after the cutoff
4. write the whole map back and announce how many records were added

The cutoff is computed once per save and shared by the sweep and the merge.
PersistenceGate makes sure only one save is ever in flight; a save attempted
while another is running is skipped, not queued.
"""

from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import feedparser

from config import config, get_logger
from models import ITEMS_KEY, RETENTION_KEY, ItemMap, new_item_record
from telemetry import trace_span
from utils import MS_PER_DAY, MS_PER_SECOND, format_timestamp_ms, now_ms

logger = get_logger("aggregator")


def compute_cutoff(current_ms: int, retention_days: int) -> int:
    """Return the retention cutoff in epoch milliseconds."""
    return int(current_ms) - int(retention_days) * MS_PER_DAY


def parse_entry_datetime(entry: Dict[str, Any]) -> Optional[int]:
    """Parse an entry's publish time to epoch milliseconds.

    ``isoDate`` is preferred; ``pubDate`` is only consulted when ``isoDate`` is
    missing or empty. Returns None when the chosen value cannot be parsed.
    """
    value = entry.get('isoDate') or entry.get('pubDate')
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    for parser in (_parse_iso8601, _parse_rfc822, _parse_with_feedparser):
        timestamp = parser(value)
        if timestamp is not None:
            return timestamp
    return None


def _to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * MS_PER_SECOND)


def _parse_iso8601(value: str) -> Optional[int]:
    try:
        # fromisoformat only learned the trailing "Z" in Python 3.11
        if value.endswith(('Z', 'z')):
            value = value[:-1] + '+00:00'
        return _to_ms(datetime.fromisoformat(value))
    except (ValueError, OverflowError):
        return None


def _parse_rfc822(value: str) -> Optional[int]:
    try:
        return _to_ms(parsedate_to_datetime(value))
    except (TypeError, ValueError, OverflowError, IndexError):
        return None


def _parse_with_feedparser(value: str) -> Optional[int]:
    """Fall back to feedparser's lenient date handlers (returns a UTC struct_time)."""
    try:
        time_struct = feedparser._parse_date(value)
        if time_struct:
            return timegm(time_struct) * MS_PER_SECOND
    except (ValueError, TypeError, AttributeError, OverflowError):
        return None
    return None


def sweep_expired_items(items: ItemMap, cutoff_ms: int) -> int:
    """Remove unstarred records dated at or before the cutoff.

    Returns:
        Number of records removed.
    """
    expired = [
        url for url, record in items.items()
        if not record.get('starred') and int(record.get('datetime') or 0) <= cutoff_ms
    ]
    for url in expired:
        del items[url]
    if expired:
        logger.info(f"Expired {len(expired)} items dated on or before {format_timestamp_ms(cutoff_ms)}")
    return len(expired)


def merge_new_items(items: ItemMap, successes: Dict[str, Dict[str, Any]], cutoff_ms: int) -> int:
    """Add a record for every fetched entry that is new and recent enough.

    Existing records are never touched. Entries without a link or with an
    unparsable date are logged and dropped; entries at or before the cutoff are
    dropped quietly.

    Returns:
        Number of records added.
    """
    added = 0
    for feed_url, parsed in successes.items():
        entries = (parsed or {}).get('entries') or []
        feed_added = 0
        skipped_old = 0
        for entry in entries:
            link = (entry.get('link') or '').strip() if isinstance(entry, dict) else ''
            if not link:
                logger.warning(f"Skipping entry without a link in {feed_url}")
                continue
            if link in items:
                continue
            timestamp = parse_entry_datetime(entry)
            if timestamp is None:
                logger.warning(
                    f"Couldn't parse time of item {link} in the feed {feed_url} "
                    f"(isoDate={entry.get('isoDate')!r}, pubDate={entry.get('pubDate')!r})"
                )
                continue
            if timestamp <= cutoff_ms:
                skipped_old += 1
                continue
            items[link] = new_item_record(link, entry, feed_url, timestamp)
            feed_added += 1
        if feed_added or skipped_old:
            logger.debug(f"{feed_url}: added={feed_added} too_old={skipped_old} entries={len(entries)}")
        added += feed_added
    return added


class SaveResult:
    """Counts from one completed save.

    ``before`` is taken after the sweep, so ``added`` counts merged records only
    and never nets out expirations.
    """

    def __init__(self, before: int, after: int, expired: int, retention_days: int, cutoff_ms: int):
        self.before = before
        self.after = after
        self.expired = expired
        self.retention_days = retention_days
        self.cutoff_ms = cutoff_ms

    @property
    def added(self) -> int:
        return self.after - self.before

    def __repr__(self) -> str:
        return f"SaveResult(added={self.added}, expired={self.expired}, total={self.after})"


async def load_retention_days(store) -> int:
    """Read the retention setting from the store, falling back to configuration."""
    raw = await store.get(RETENTION_KEY)
    if raw is None:
        return config.RETENTION_DAYS
    try:
        days = int(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid {RETENTION_KEY} value {raw!r} in store; using {config.RETENTION_DAYS}")
        return config.RETENTION_DAYS
    if days < 1:
        logger.warning(f"{RETENTION_KEY} must be >=1 (got {days}); using {config.RETENTION_DAYS}")
        return config.RETENTION_DAYS
    return days


async def load_items(store) -> ItemMap:
    """Read the persisted item map, treating a missing or malformed value as empty."""
    items = await store.get(ITEMS_KEY)
    if items is None:
        return {}
    if not isinstance(items, dict):
        logger.warning(f"Ignoring malformed value under {ITEMS_KEY} ({type(items).__name__})")
        return {}
    return items


class PersistenceGate:
    """Single-flight guard around the read, sweep, merge, write sequence.

    ``save`` returns None without touching the store when another save is
    still in flight. The flag is owned by the save that raised it and released
    exactly once in a ``finally`` block, whether the store calls succeed or fail.
    """

    def __init__(self, store, notifier=None):
        self.store = store
        self.notifier = notifier
        self._in_flight: Optional[object] = None

    @property
    def busy(self) -> bool:
        return self._in_flight is not None

    def _acquire(self) -> Optional[object]:
        if self._in_flight is not None:
            return None
        token = object()
        self._in_flight = token
        return token

    def _release(self, token: object) -> None:
        # A stale or repeated release must not clear another save's flag
        if self._in_flight is token:
            self._in_flight = None

    @trace_span(
        "aggregator.save",
        tracer_name="aggregator",
        attr_from_args=lambda self, successes, current_ms=None: {"batch.sources": len(successes)},
    )
    async def save(self, successes: Dict[str, Dict[str, Any]], current_ms: Optional[int] = None) -> Optional[SaveResult]:
        """Fold one batch of fetch results into the store.

        Returns:
            A SaveResult, or None when the save was skipped because another one
            was in flight.
        """
        token = self._acquire()
        if token is None:
            logger.info("Previous save still in flight; skipping this one")
            return None

        try:
            items = await load_items(self.store)
            retention_days = await load_retention_days(self.store)
            cutoff = compute_cutoff(now_ms() if current_ms is None else current_ms, retention_days)

            expired = sweep_expired_items(items, cutoff)
            before = len(items)
            merge_new_items(items, successes, cutoff)
            result = SaveResult(before, len(items), expired, retention_days, cutoff)

            await self.store.set(ITEMS_KEY, items)
        finally:
            self._release(token)

        logger.info(
            "Saved %d items (%d new, %d expired, retention %dd)",
            result.after,
            result.added,
            result.expired,
            result.retention_days,
        )
        if result.added > 0 and self.notifier is not None:
            await self._notify(result.added)
        return result

    async def _notify(self, count: int) -> None:
        try:
            await self.notifier.notify(count)
        except Exception as e:
            logger.error(f"Failed to send new items notification: {e}")
