#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class AggregatorError(Exception):
    """Base class for feed aggregator errors."""


class FeedFetchError(AggregatorError):
    """Raised when a single source cannot be fetched or parsed.

    Attributes:
        url: The source URL that failed.
        reason: Short human-readable failure description.
        status: HTTP status code, when the failure came from a response.
    """

    def __init__(self, url: str, reason: str, status: Optional[int] = None):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason
        self.status = status


class StoreError(AggregatorError):
    """Raised when the key-value store cannot read or write a key."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Store operation on '{key}' failed: {reason}")
        self.key = key
        self.reason = reason

__all__ = ["AggregatorError", "FeedFetchError", "StoreError"]
