"""Timer scheduling for the alert engine.

Two implementations share one surface: :class:`AsyncioScheduler` runs on the
event loop with real delays, :class:`VirtualScheduler` keeps a queue of due
callbacks and runs them only when :meth:`VirtualScheduler.advance` moves its
:class:`~retail_ledger.clock.ManualClock` forward.

Every method accepts an optional ``key``. While a callback registered under a
key is still pending, further requests with the same key are dropped; this is
how "re-evaluate soon" requests are debounced.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Protocol, Set, Tuple

from .clock import Clock, ManualClock, ensure_aware

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callback, *, key: str | None = None) -> None:
        ...

    def call_at(self, when: datetime, callback: Callback, *, key: str | None = None) -> None:
        ...

    def every(self, interval: float, callback: Callback, *, key: str | None = None) -> None:
        ...

    def cancel_all(self) -> None:
        ...


async def _run_callback(callback: Callback, label: str) -> None:
    try:
        await callback()
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Scheduled task %s failed", label)


def _label(callback: Callback, key: str | None) -> str:
    return key or getattr(callback, "__qualname__", repr(callback))


class AsyncioScheduler:
    """Scheduler backed by ``asyncio`` tasks on the running loop."""

    def __init__(self, clock: Clock) -> None:
        self.clock = clock
        self._tasks: Set[asyncio.Task[None]] = set()
        self._keyed: Dict[str, asyncio.Task[None]] = {}

    def _spawn(self, coro: Awaitable[None], key: str | None) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        if key is not None:
            self._keyed[key] = task
        task.add_done_callback(lambda done: self._forget(done, key))

    def _forget(self, task: asyncio.Task[None], key: str | None) -> None:
        self._tasks.discard(task)
        if key is not None and self._keyed.get(key) is task:
            del self._keyed[key]

    def _is_pending(self, key: str | None) -> bool:
        return key is not None and key in self._keyed and not self._keyed[key].done()

    def call_later(self, delay: float, callback: Callback, *, key: str | None = None) -> None:
        if self._is_pending(key):
            return

        async def _delayed() -> None:
            await asyncio.sleep(max(0.0, delay))
            await _run_callback(callback, _label(callback, key))

        self._spawn(_delayed(), key)

    def call_at(self, when: datetime, callback: Callback, *, key: str | None = None) -> None:
        delay = (ensure_aware(when) - self.clock.now()).total_seconds()
        self.call_later(delay, callback, key=key)

    def every(self, interval: float, callback: Callback, *, key: str | None = None) -> None:
        if interval <= 0:
            raise ValueError("Interval must be positive")
        if self._is_pending(key):
            return

        async def _repeat() -> None:
            while True:
                await asyncio.sleep(interval)
                await _run_callback(callback, _label(callback, key))

        self._spawn(_repeat(), key)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._keyed.clear()

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        self.cancel_all()
        await asyncio.gather(*tasks, return_exceptions=True)


@dataclass(order=True)
class _Entry:
    due: datetime
    seq: int
    callback: Callback = field(compare=False)
    interval: timedelta | None = field(compare=False, default=None)
    key: str | None = field(compare=False, default=None)
    cancelled: bool = field(compare=False, default=False)


class VirtualScheduler:
    """Deterministic scheduler driven by a :class:`ManualClock`."""

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self._queue: List[_Entry] = []
        self._keyed: Dict[str, _Entry] = {}
        self._counter = itertools.count()

    def _push(
        self,
        due: datetime,
        callback: Callback,
        *,
        interval: timedelta | None = None,
        key: str | None = None,
    ) -> None:
        if key is not None and key in self._keyed:
            return
        entry = _Entry(ensure_aware(due), next(self._counter), callback, interval, key)
        heapq.heappush(self._queue, entry)
        if key is not None:
            self._keyed[key] = entry

    def call_later(self, delay: float, callback: Callback, *, key: str | None = None) -> None:
        self._push(self.clock.now() + timedelta(seconds=max(0.0, delay)), callback, key=key)

    def call_at(self, when: datetime, callback: Callback, *, key: str | None = None) -> None:
        self._push(max(ensure_aware(when), self.clock.now()), callback, key=key)

    def every(self, interval: float, callback: Callback, *, key: str | None = None) -> None:
        if interval <= 0:
            raise ValueError("Interval must be positive")
        step = timedelta(seconds=interval)
        self._push(self.clock.now() + step, callback, interval=step, key=key)

    def cancel_all(self) -> None:
        for entry in self._queue:
            entry.cancelled = True
        self._queue.clear()
        self._keyed.clear()

    @property
    def pending(self) -> List[Tuple[datetime, str]]:
        live = sorted(entry for entry in self._queue if not entry.cancelled)
        return [(entry.due, _label(entry.callback, entry.key)) for entry in live]

    async def advance(self, delta: timedelta | float) -> int:
        """Move the clock forward by ``delta`` running every callback that falls due.

        Returns how many callbacks ran.
        """

        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        target = self.clock.now() + delta
        ran = 0
        while self._queue and self._queue[0].due <= target:
            entry = heapq.heappop(self._queue)
            if entry.cancelled:
                continue
            if entry.due > self.clock.now():
                self.clock.set(entry.due)
            if entry.interval is not None:
                entry.due = entry.due + entry.interval
                entry.seq = next(self._counter)
                heapq.heappush(self._queue, entry)
            elif entry.key is not None and self._keyed.get(entry.key) is entry:
                del self._keyed[entry.key]
            await _run_callback(entry.callback, _label(entry.callback, entry.key))
            ran += 1
        if target > self.clock.now():
            self.clock.set(target)
        return ran

    async def run_pending(self) -> int:
        return await self.advance(timedelta(0))


__all__ = [
    "Callback",
    "Scheduler",
    "AsyncioScheduler",
    "VirtualScheduler",
]
