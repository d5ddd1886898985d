import asyncio
from datetime import datetime, timezone

import pytest

from fetcher import FetchBatchRunner
from models import ITEMS_KEY
from scheduler import CycleScheduler, RecheckThrottle, SchedulerContext, SchedulerState
from utils import now_ms


class MemoryStore:
    def __init__(self):
        self.values = {}
        self.sets = 0

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.sets += 1
        self.values[key] = value


class StaticLister:
    def __init__(self, sources):
        self.sources = list(sources)

    async def list_sources(self):
        return list(self.sources)


class BlockingLister(StaticLister):
    """Lister that waits for the test to release it."""

    def __init__(self, sources):
        super().__init__(sources)
        self.release = asyncio.Event()

    async def list_sources(self):
        await self.release.wait()
        return list(self.sources)


class FailingLister:
    async def list_sources(self):
        raise OSError("bookmarks file missing")


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    async def notify(self, count):
        self.calls.append(count)


async def fake_fetch(url):
    stamp = datetime.fromtimestamp(now_ms() / 1000, tz=timezone.utc).isoformat()
    return {'title': url, 'entries': [{'link': f"{url}/post", 'title': "Post", 'isoDate': stamp}]}


def make_scheduler(lister, notifier=None, store=None):
    context = SchedulerContext(store or MemoryStore(), notifier, RecheckThrottle(15 * 60 * 1000))
    return CycleScheduler(lister, FetchBatchRunner(fake_fetch, concurrency=2), context, tick_interval=0.01)


@pytest.mark.asyncio
async def test_tick_fetches_due_sources_and_notifies():
    store = MemoryStore()
    notifier = RecordingNotifier()
    scheduler = make_scheduler(StaticLister(["https://a.example.com", "https://b.example.com"]), notifier, store)

    report = await scheduler.tick()

    assert report.due == ["https://a.example.com", "https://b.example.com"]
    assert report.new_items == 2
    assert set(store.values[ITEMS_KEY]) == {"https://a.example.com/post", "https://b.example.com/post"}
    assert notifier.calls == [2]
    assert scheduler.state is SchedulerState.IDLE


@pytest.mark.asyncio
async def test_throttled_sources_skip_fetch_and_save():
    store = MemoryStore()
    scheduler = make_scheduler(StaticLister(["https://a.example.com"]), store=store)

    await scheduler.tick()
    report = await scheduler.tick()

    assert report.due == []
    assert report.save is None
    assert report.batch.successes == {}
    assert store.sets == 1


@pytest.mark.asyncio
async def test_tick_is_ignored_while_a_cycle_is_running():
    lister = BlockingLister(["https://a.example.com"])
    scheduler = make_scheduler(lister)

    first = asyncio.create_task(scheduler.tick())
    await asyncio.sleep(0)
    assert scheduler.state is SchedulerState.RUNNING

    assert await scheduler.tick() is None

    lister.release.set()
    report = await first
    assert report.new_items == 1
    assert scheduler.state is SchedulerState.IDLE
    assert scheduler.context.cycles == 1


@pytest.mark.asyncio
async def test_listing_failure_returns_to_idle_and_keeps_ticking():
    scheduler = make_scheduler(FailingLister())

    assert await scheduler.tick() is None
    assert scheduler.state is SchedulerState.IDLE
    assert len(scheduler.context.throttle) == 0

    scheduler.lister = StaticLister(["https://a.example.com"])
    report = await scheduler.tick()
    assert report.new_items == 1


@pytest.mark.asyncio
async def test_run_forever_ticks_until_stopped():
    scheduler = make_scheduler(StaticLister(["https://a.example.com"]))

    task = asyncio.create_task(scheduler.run_forever())
    await asyncio.sleep(0.05)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1)

    assert scheduler.context.cycles >= 2
    assert scheduler.state is SchedulerState.IDLE


@pytest.mark.asyncio
async def test_stop_before_start_prevents_any_cycle():
    scheduler = make_scheduler(StaticLister(["https://a.example.com"]))
    scheduler.stop()

    await asyncio.wait_for(scheduler.run_forever(), timeout=1)

    assert scheduler.context.cycles == 0


@pytest.mark.asyncio
async def test_contexts_are_independent():
    lister = StaticLister(["https://a.example.com"])
    first = make_scheduler(lister)
    second = make_scheduler(lister)

    await first.tick()
    report = await second.tick()

    assert report.due == ["https://a.example.com"]
