#!/usr/bin/env python3
"""
Aggregation cycle scheduler.

A cycle lists candidate sources, throttles them down to the ones due for a
recheck, fetches those, then hands the results to the persistence gate. The
scheduler ticks on a short fixed interval so that newly added sources are
picked up quickly, while the recheck throttle keeps each individual source on
a much longer cadence.

Scheduling state (throttle table, persistence gate, Idle/Running state) lives
in a SchedulerContext instead of module globals, so tests can build a fresh
one per case.
"""

import asyncio
from enum import Enum
from time import monotonic
from typing import Dict, Iterable, List, Optional

from aggregator import PersistenceGate, SaveResult
from config import config, get_logger
from fetcher import BatchResult, FetchBatchRunner
from telemetry import trace_span
from utils import MS_PER_SECOND, format_duration, now_ms

logger = get_logger("scheduler")


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"


class RecheckThrottle:
    """Remember when each source was last scheduled and filter out recent ones."""

    def __init__(self, interval_ms: Optional[int] = None):
        if interval_ms is None:
            interval_ms = config.AGGREGATE_INTERVAL_MINUTES * 60 * MS_PER_SECOND
        self.interval_ms = int(interval_ms)
        self.last_checked: Dict[str, int] = {}

    def is_due(self, source: str, current_ms: int) -> bool:
        last = self.last_checked.get(source)
        return last is None or current_ms - last > self.interval_ms

    def select_due(self, sources: Iterable[str], current_ms: int) -> List[str]:
        """Return the distinct sources due for a check and mark them checked now.

        Marking happens before the fetch starts, so a slow fetch does not get
        the same source selected again on the next tick.
        """
        due: List[str] = []
        for source in dict.fromkeys(sources):
            if self.is_due(source, current_ms):
                self.last_checked[source] = current_ms
                due.append(source)
        return due

    def __len__(self) -> int:
        return len(self.last_checked)


class SchedulerContext:
    """Mutable state shared by consecutive cycles of one scheduler."""

    def __init__(self, store, notifier=None, throttle: Optional[RecheckThrottle] = None):
        self.throttle = throttle or RecheckThrottle()
        self.gate = PersistenceGate(store, notifier)
        self.state = SchedulerState.IDLE
        self.cycles = 0


class CycleReport:
    """What happened during one cycle."""

    def __init__(self, sources: int, due: List[str], batch: BatchResult, save: Optional[SaveResult], duration: float):
        self.sources = sources
        self.due = due
        self.batch = batch
        self.save = save
        self.duration = duration

    @property
    def new_items(self) -> int:
        return self.save.added if self.save else 0

    def __repr__(self) -> str:
        return (
            f"CycleReport(sources={self.sources}, due={len(self.due)}, "
            f"ok={len(self.batch.successes)}, failed={len(self.batch.errors)}, new={self.new_items})"
        )


class CycleScheduler:
    """Drive list -> throttle -> fetch -> save cycles, one at a time."""

    def __init__(self, lister, runner: FetchBatchRunner, context: SchedulerContext, tick_interval: Optional[float] = None):
        self.lister = lister
        self.runner = runner
        self.context = context
        self.tick_interval = config.CHECK_INTERVAL_SECONDS if tick_interval is None else tick_interval
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> SchedulerState:
        return self.context.state

    @trace_span("scheduler.cycle", tracer_name="scheduler")
    async def run_cycle(self) -> CycleReport:
        """Run one cycle. Listing and store failures propagate to the caller."""
        started = monotonic()
        sources = await self.lister.list_sources()
        due = self.context.throttle.select_due(sources, now_ms())

        if not due:
            logger.debug(f"No sources due ({len(sources)} candidates)")
            return CycleReport(len(sources), due, BatchResult(), None, monotonic() - started)

        logger.info(f"Checking {len(due)} of {len(set(sources))} sources")
        batch = await self.runner.run(due)
        save = await self.context.gate.save(batch.successes)

        report = CycleReport(len(sources), due, batch, save, monotonic() - started)
        logger.info(f"Cycle finished in {format_duration(report.duration)}: {report}")
        return report

    async def tick(self) -> Optional[CycleReport]:
        """Run a cycle unless one is already running.

        Returns None when the tick was ignored or the cycle failed; either way
        the scheduler is back to IDLE afterwards.
        """
        if self.context.state is SchedulerState.RUNNING:
            logger.debug("Cycle already running; ignoring tick")
            return None

        self.context.state = SchedulerState.RUNNING
        try:
            return await self.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Aggregation cycle failed: {e}")
            return None
        finally:
            self.context.cycles += 1
            self.context.state = SchedulerState.IDLE

    async def run_forever(self) -> None:
        """Tick until stop() is called; the next tick is armed only after the previous one completes."""
        logger.info(
            "Starting scheduler (tick %ss, per-source interval %s)",
            self.tick_interval,
            format_duration(self.context.throttle.interval_ms / MS_PER_SECOND),
        )
        while not self._stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Ask run_forever() to return after the current cycle."""
        self._stop_event.set()
