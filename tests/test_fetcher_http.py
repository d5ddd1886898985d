import asyncio

import pytest
from aiohttp import ClientConnectionError

from config import config
from errors import FeedFetchError
from fetcher import FeedFetcher

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Tiny</title>
  <item><title>Only post</title><link>https://example.com/only</link>
  <pubDate>Mon, 17 Nov 2025 08:30:00 +0000</pubDate></item>
</channel></rss>
"""


class FakeResponse:
    def __init__(self, status, body=b""):
        self.status = status
        self.body = body

    async def read(self):
        return self.body


class FakeRequest:
    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession; each get() yields the canned outcome."""

    closed = False

    def __init__(self, outcome):
        self.outcome = outcome
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        return FakeRequest(self.outcome)


async def fetch_with(outcome, url="https://example.com/rss.xml"):
    session = FakeSession(outcome)
    fetcher = FeedFetcher(session=session)
    try:
        return await fetcher.fetch(url), session
    finally:
        await fetcher.close()


@pytest.mark.asyncio
async def test_successful_fetch_sends_headers_and_parses():
    parsed, session = await fetch_with(FakeResponse(200, RSS))

    assert parsed['title'] == "Tiny"
    assert [e['link'] for e in parsed['entries']] == ["https://example.com/only"]
    url, kwargs = session.requests[0]
    assert url == "https://example.com/rss.xml"
    assert kwargs['headers']['User-Agent'] == config.USER_AGENT
    assert kwargs['max_redirects'] == config.MAX_REDIRECTS


@pytest.mark.asyncio
async def test_non_200_status_raises_with_status():
    with pytest.raises(FeedFetchError) as excinfo:
        await fetch_with(FakeResponse(404))

    assert excinfo.value.status == 404
    assert excinfo.value.url == "https://example.com/rss.xml"
    assert "HTTP 404" in excinfo.value.reason


@pytest.mark.asyncio
async def test_connection_error_is_wrapped():
    with pytest.raises(FeedFetchError) as excinfo:
        await fetch_with(ClientConnectionError("connection reset"))

    assert excinfo.value.status is None
    assert "Network error" in excinfo.value.reason
    assert isinstance(excinfo.value.__cause__, ClientConnectionError)


@pytest.mark.asyncio
async def test_timeout_is_wrapped():
    with pytest.raises(FeedFetchError) as excinfo:
        await fetch_with(asyncio.TimeoutError())

    assert "Timed out" in excinfo.value.reason
    assert isinstance(excinfo.value.__cause__, asyncio.TimeoutError)


@pytest.mark.asyncio
async def test_shared_session_is_not_closed_by_fetcher():
    session = FakeSession(FakeResponse(200, RSS))
    fetcher = FeedFetcher(session=session)
    await fetcher.fetch("https://example.com/rss.xml")
    await fetcher.close()

    assert fetcher.session is session
    assert not session.closed
