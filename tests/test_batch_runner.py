import asyncio

import pytest

from errors import FeedFetchError
from fetcher import FetchBatchRunner


class FakeFetch:
    """Fetch callable returning canned feeds or raising for listed URLs."""

    def __init__(self, failures=(), delay=0.0):
        self.failures = set(failures)
        self.delay = delay
        self.calls = []
        self.active = 0
        self.peak = 0

    async def __call__(self, url):
        self.calls.append(url)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if url in self.failures:
                raise FeedFetchError(url, "HTTP 500", status=500)
            return {'title': url, 'entries': [{'link': f"{url}/post"}]}
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_empty_input_returns_immediately():
    fetch = FakeFetch()

    result = await FetchBatchRunner(fetch, concurrency=2).run([])

    assert result.successes == {}
    assert result.errors == []
    assert fetch.calls == []


@pytest.mark.asyncio
async def test_partial_failure_is_isolated():
    fetch = FakeFetch(failures={"https://bad.example.com"})

    result = await FetchBatchRunner(fetch, concurrency=2).run(
        ["https://good.example.com", "https://bad.example.com", "https://other.example.com"]
    )

    assert set(result.successes) == {"https://good.example.com", "https://other.example.com"}
    assert [failure.url for failure in result.errors] == ["https://bad.example.com"]
    assert isinstance(result.errors[0].error, FeedFetchError)
    assert result.errors[0].error.status == 500


@pytest.mark.asyncio
async def test_all_sources_failing_still_returns_a_result():
    fetch = FakeFetch(failures={"https://a.example.com", "https://b.example.com"})

    result = await FetchBatchRunner(fetch).run(["https://a.example.com", "https://b.example.com"])

    assert result.successes == {}
    assert len(result.errors) == 2


@pytest.mark.asyncio
async def test_duplicate_sources_are_fetched_once():
    fetch = FakeFetch()

    result = await FetchBatchRunner(fetch).run(["https://a.example.com", "https://a.example.com"])

    assert fetch.calls == ["https://a.example.com"]
    assert list(result.successes) == ["https://a.example.com"]


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    fetch = FakeFetch(delay=0.01)
    sources = [f"https://{i}.example.com" for i in range(6)]

    result = await FetchBatchRunner(fetch, concurrency=2).run(sources)

    assert len(result.successes) == 6
    assert fetch.peak <= 2
