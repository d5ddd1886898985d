#!/usr/bin/env python3
"""
RSS/Atom feed fetcher and batch runner.

FeedFetcher downloads one source with aiohttp, parses it with feedparser in a
thread pool and normalizes its entries to the shape the aggregator merges:
``{link, title, description, pubDate, isoDate}``.

FetchBatchRunner fans a set of sources out to a fetch callable and gathers a
success/failure partition. One source failing never fails the batch, and no
retry happens within a batch; the next scheduled cycle is the retry.
"""

from asyncio import CancelledError, Semaphore, TimeoutError, gather, get_running_loop
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FeedFetchError
from telemetry import trace_span
from utils import clean_html_to_markdown

logger = get_logger("fetcher")

HTTP_OK = 200

FetchFunc = Callable[[str], Awaitable[Dict[str, Any]]]


class FeedFetcher:
    """Fetch and parse a single feed URL into structured entries."""

    def __init__(self, session: Optional[ClientSession] = None) -> None:
        self.executor = ThreadPoolExecutor()
        self.session = session
        self._owns_session = session is None

    async def _get_session(self) -> ClientSession:
        if self.session is None or self.session.closed:
            self.session = ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT))
            self._owns_session = True
        return self.session

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"feed.url": url},
    )
    async def fetch(self, url: str) -> Dict[str, Any]:
        """Fetch and parse one source.

        Returns:
            ``{'title': str, 'entries': [entry, ...]}``

        Raises:
            FeedFetchError: On network errors, non-200 responses or unparsable content.
        """
        content = await self._fetch_feed_content(url)
        return await self._parse_feed(url, content)

    async def _fetch_feed_content(self, url: str) -> bytes:
        """Download the raw feed document."""
        session = await self._get_session()
        try:
            async with session.get(
                url,
                headers={'User-Agent': config.USER_AGENT},
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                if response.status != HTTP_OK:
                    raise FeedFetchError(url, f"HTTP {response.status}", status=response.status)
                return await response.read()
        except TimeoutError as e:
            raise FeedFetchError(url, f"Timed out after {config.HTTP_TIMEOUT}s") from e
        except ClientError as e:
            raise FeedFetchError(url, f"Network error: {self._format_client_error(e)}") from e

    async def _parse_feed(self, url: str, content: bytes) -> Dict[str, Any]:
        """Parse feed content and normalize its entries."""
        feedparser_options = {
            'sanitize_html': True,
            'resolve_relative_uris': True,
            'response_headers': {'content-location': url},
        }
        # feedparser is not async, run in executor
        feed = await self.run_in_executor(lambda c: feedparser.parse(c, **feedparser_options), content)

        entries = feed.get('entries') or []
        if feed.get('bozo') and not entries:
            reason = feed.get('bozo_exception') or "not a feed"
            raise FeedFetchError(url, f"Parse error: {reason}")
        if feed.get('bozo'):
            logger.debug(f"Feed parsing warning for {url}: {feed.get('bozo_exception')}")

        title = feed.feed.get('title', '') if 'feed' in feed else ''
        normalized = [self.normalize_entry(entry) for entry in entries]
        logger.debug(f"Parsed {len(normalized)} entries from {url} ({feed.get('version') or 'unknown format'})")
        return {'title': title, 'entries': normalized}

    def normalize_entry(self, entry) -> Dict[str, Any]:
        """Reduce a feedparser entry to link/title/description and the two date strings."""
        link = (entry.get('link') or '').strip()
        return {
            'link': link,
            'title': (entry.get('title') or '').strip(),
            'description': self.extract_description(entry, link),
            'pubDate': entry.get('published') or entry.get('updated') or None,
            'isoDate': self._iso_date(entry),
        }

    def extract_description(self, entry, base_url: Optional[str] = None) -> str:
        """Extract the entry body (content, then summary, then description) as Markdown."""
        content = ""
        for content_item in entry.get('content') or []:
            if content_item.get('value'):
                content = content_item['value']
                break
        if not content:
            content = entry.get('summary') or entry.get('description') or ""
        return clean_html_to_markdown(content, base_url=base_url or None)

    def _iso_date(self, entry) -> Optional[str]:
        """Render feedparser's parsed publish/update time (UTC struct_time) as ISO-8601."""
        for field in ('published_parsed', 'updated_parsed'):
            parsed = entry.get(field)
            if not parsed:
                continue
            try:
                dt = datetime.fromtimestamp(timegm(parsed), tz=timezone.utc)
            except (OverflowError, ValueError, OSError, TypeError):
                continue
            return dt.isoformat().replace('+00:00', 'Z')
        return None

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            if errno is not None:
                parts.append(f"errno={errno}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def close(self) -> None:
        """Close the HTTP session (if we created it) and the executor."""
        if self.session is not None and self._owns_session and not self.session.closed:
            await self.session.close()
        self.executor.shutdown(wait=False)
        logger.debug("FeedFetcher closed")


class FetchFailure:
    """One source that failed within a batch."""

    def __init__(self, url: str, error: BaseException):
        self.url = url
        self.error = error

    def __repr__(self) -> str:
        return f"FetchFailure({self.url!r}, {self.error!r})"


class BatchResult:
    """Success/failure partition of one fetch batch."""

    def __init__(self, successes: Optional[Dict[str, Dict[str, Any]]] = None, errors: Optional[List[FetchFailure]] = None):
        self.successes: Dict[str, Dict[str, Any]] = successes if successes is not None else {}
        self.errors: List[FetchFailure] = errors if errors is not None else []

    def __repr__(self) -> str:
        return f"BatchResult(successes={len(self.successes)}, errors={len(self.errors)})"


class FetchBatchRunner:
    """Fetch a set of sources concurrently with per-source error isolation."""

    def __init__(self, fetch: FetchFunc, concurrency: Optional[int] = None):
        self.fetch = fetch
        self.concurrency = concurrency or config.FETCH_CONCURRENCY

    @trace_span(
        "fetch_batch",
        tracer_name="fetcher",
        attr_from_args=lambda self, sources: {"batch.size": len(list(sources)) if isinstance(sources, (list, tuple, set)) else 0},
    )
    async def run(self, sources: Iterable[str]) -> BatchResult:
        """Fetch every distinct source and return once all have settled."""
        unique_sources = list(dict.fromkeys(sources))
        result = BatchResult()
        if not unique_sources:
            return result

        semaphore = Semaphore(self.concurrency)

        async def fetch_one(url: str) -> None:
            async with semaphore:
                try:
                    result.successes[url] = await self.fetch(url)
                except CancelledError:
                    raise
                except Exception as e:
                    result.errors.append(FetchFailure(url, e))
                    logger.warning(f"Failed to fetch {url}: {e}")

        await gather(*(fetch_one(url) for url in unique_sources))
        logger.info(
            "Fetched %d sources: %d ok, %d failed",
            len(unique_sources),
            len(result.successes),
            len(result.errors),
        )
        return result
