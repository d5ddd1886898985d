#!/usr/bin/env python3
"""
Source listers.

A source lister answers ``await list_sources()`` with the current candidate
feed URLs. Duplicates are allowed; the scheduler collapses them. Listers are
consulted on every cycle, so edits to feeds.yaml or to the bookmarks file are
picked up without a restart.
"""

from asyncio import get_running_loop
from os import path
from typing import List

from bs4 import BeautifulSoup

from config import config, get_logger
from utils import validate_url

logger = get_logger("sources")

# Bookmark exports are small; anything bigger is almost certainly the wrong file
MAX_SOURCES_FILE_BYTES = 5 * 1024 * 1024


class ConfigSourceLister:
    """Feed URLs declared under ``feeds:`` in feeds.yaml."""

    def __init__(self, reload: bool = True):
        self.reload = reload
        self._last_mtime = None

    async def list_sources(self) -> List[str]:
        if self.reload:
            try:
                mtime = path.getmtime(config.FEEDS_CONFIG_PATH)
            except OSError:
                mtime = None
            # Only re-read feeds.yaml when it changed since the last cycle
            if mtime != self._last_mtime:
                config.reload_feed_sources()
                self._last_mtime = mtime
        return config.feed_urls()


class BookmarkSourceLister:
    """Feed URLs from an OPML subscription list or a Netscape bookmarks export.

    OPML ``<outline xmlUrl=...>`` elements are preferred; when the file has
    none, every ``<a href=...>`` is treated as a feed bookmark. Only http(s)
    URLs are returned.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path

    async def list_sources(self) -> List[str]:
        loop = get_running_loop()
        return await loop.run_in_executor(None, self._read_sources)

    def _read_sources(self) -> List[str]:
        # OSError propagates: a missing bookmarks file aborts the cycle
        size = path.getsize(self.file_path)
        if size > MAX_SOURCES_FILE_BYTES:
            raise ValueError(f"Sources file too large: {size} bytes (limit: {MAX_SOURCES_FILE_BYTES} bytes)")
        with open(self.file_path, 'r', encoding='utf-8', errors='replace') as f:
            return self.parse(f.read())

    def parse(self, document: str) -> List[str]:
        """Extract feed URLs from OPML or bookmarks HTML text."""
        soup = BeautifulSoup(document, 'html.parser')

        # html.parser lowercases attribute names, so xmlUrl becomes xmlurl
        candidates = [outline.get('xmlurl') for outline in soup.find_all('outline') if outline.get('xmlurl')]
        if not candidates:
            candidates = [anchor.get('href') for anchor in soup.find_all('a', href=True)]

        urls = []
        for candidate in candidates:
            candidate = (candidate or '').strip()
            if validate_url(candidate):
                urls.append(candidate)
            else:
                logger.debug(f"Ignoring non-http source {candidate!r} in {self.file_path}")
        return urls


class CombinedSourceLister:
    """Concatenate several listers; any failure fails the whole listing."""

    def __init__(self, *listers):
        self.listers = listers

    async def list_sources(self) -> List[str]:
        sources: List[str] = []
        for lister in self.listers:
            sources.extend(await lister.list_sources())
        return sources


def build_source_lister():
    """Combine feeds.yaml with the optional SOURCES_FILE."""
    if config.SOURCES_FILE:
        logger.info(f"Reading additional sources from {config.SOURCES_FILE}")
        return CombinedSourceLister(ConfigSourceLister(), BookmarkSourceLister(config.SOURCES_FILE))
    return ConfigSourceLister()
