#!/usr/bin/env python3
"""
Utility functions for the feed aggregator.

Shared helpers used by the fetcher, the aggregator and the CLI: clock access in
epoch milliseconds, URL validation, HTML sanitizing and human-friendly
formatting.
"""

from datetime import datetime, timezone
from time import time
from typing import Optional
import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger

logger = get_logger("utils")

MS_PER_SECOND = 1000
MS_PER_DAY = 24 * 60 * 60 * MS_PER_SECOND

# Elements that never carry readable entry text
UNSAFE_TAGS = (
    "script", "style", "iframe", "form", "object", "embed", "noscript",
    "frame", "frameset", "applet", "meta", "base", "link",
)
TRACKING_SRC = re.compile(r'(pixel|tracker|counter|spacer|blank|trans)', re.I)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time() * MS_PER_SECOND)


def validate_url(url: str) -> bool:
    """Return True for an absolute http(s) URL with a dotted host."""
    if not isinstance(url, str):
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in ('http', 'https') and '.' in parsed.netloc


def format_duration(seconds: float) -> str:
    """Format a duration in seconds, e.g. ``3725`` -> ``"1h 2m 5s"``."""
    if seconds < 0:
        return "0s"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    parts = [f"{value}{unit}" for value, unit in ((hours, "h"), (minutes, "m")) if value]
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def format_timestamp_ms(timestamp_ms: Optional[int]) -> str:
    """Return a human-readable UTC timestamp for an epoch-millisecond value."""
    if timestamp_ms in (None, ""):
        return "n/a"
    try:
        return datetime.fromtimestamp(int(timestamp_ms) / MS_PER_SECOND, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    except (OSError, OverflowError, ValueError, TypeError):
        return str(timestamp_ms)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    if not text or len(text) <= max_length:
        return text
    keep = max(max_length - len(suffix), 0)
    return text[:keep] + suffix if keep else text[:max_length]


def _strip_unsafe(soup: BeautifulSoup) -> None:
    for tag in soup(UNSAFE_TAGS):
        tag.decompose()
    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            name = attr.lower()
            if name.startswith('on'):
                del tag[attr]
            elif name in ('href', 'src') and str(tag[attr]).strip().lower().startswith('javascript:'):
                del tag[attr]


def _drop_tracking_pixels(soup: BeautifulSoup) -> None:
    for img in soup.find_all('img'):
        src = img.get('src', '')
        tiny = img.get('height') in ('0', '1') and re.search(r'\.(gif|png)$', src, re.I)
        if TRACKING_SRC.search(src) or tiny:
            img.decompose()


def _absolute_url(value: str, base_url: Optional[str], allow_mailto: bool) -> Optional[str]:
    if allow_mailto and value.startswith('mailto:'):
        return value
    if value.startswith(('http://', 'https://')):
        return value
    if base_url:
        resolved = urljoin(base_url, value)
        if resolved.startswith(('http://', 'https://')):
            return resolved
    return None


def _rewrite_references(soup: BeautifulSoup, base_url: Optional[str]) -> None:
    """Make link and image references absolute; unresolvable links become ``#``, images lose src."""
    for tag in soup.find_all(['a', 'img']):
        for attr in ('href', 'src'):
            value = str(tag.get(attr) or '')
            if not value:
                continue
            resolved = _absolute_url(value, base_url, allow_mailto=attr == 'href')
            if resolved:
                tag[attr] = resolved
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize entry HTML and convert it to Markdown.

    Dangerous elements, inline event handlers, ``javascript:`` URLs and common
    tracking pixels are removed. Relative references are resolved against
    ``base_url`` when given, and neutralized otherwise. On any conversion error
    the original text is returned unchanged.
    """
    if not html_content:
        return ""

    try:
        soup = BeautifulSoup(html_content, 'html.parser')
        _strip_unsafe(soup)
        _drop_tracking_pixels(soup)
        _rewrite_references(soup, base_url)
        # wrap_width=0 keeps long URLs on one line
        return md(str(soup), heading_style="ATX", wrap_width=0).strip()
    except Exception as e:
        logger.error(f"Error cleaning HTML to Markdown: {e}")
        return html_content
