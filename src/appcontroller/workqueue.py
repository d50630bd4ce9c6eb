"""Asyncio work queue with per-key exclusivity and rate limiting.

Guarantees:
- A key is handed to at most one worker at a time. A key added while it is
  being processed is queued again when the worker calls done().
- Adding a key that is already waiting is a no-op.
- add_after() schedules an add on the event loop timer.
- add_rate_limited() delays by base * 2**failures, capped at max_delay.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Hashable

from .config import DEFAULT_RATE_LIMIT_BASE_DELAY_SECONDS, DEFAULT_RATE_LIMIT_MAX_DELAY_SECONDS


class QueueShutdown(Exception):
    """Raised by get() once the queue is shut down and drained."""

    pass


class WorkQueue:
    def __init__(
        self,
        base_delay: float = DEFAULT_RATE_LIMIT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_RATE_LIMIT_MAX_DELAY_SECONDS,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay

        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._failures: dict[Hashable, int] = {}
        self._timers: set[asyncio.TimerHandle] = set()

        self._has_items = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    def add(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._has_items.set()

    async def get(self) -> Hashable:
        """Wait for the next item and mark it as processing."""
        while not self._queue:
            if self._shutting_down:
                raise QueueShutdown()
            self._has_items.clear()
            await self._has_items.wait()
        item = self._queue.popleft()
        self._processing.add(item)
        self._dirty.discard(item)
        return item

    def done(self, item: Hashable) -> None:
        """Release item; re-queue it if it was added while processing."""
        self._processing.discard(item)
        if item in self._dirty:
            self._queue.append(item)
            self._has_items.set()

    def add_after(self, item: Hashable, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def fire() -> None:
            self._timers.discard(handle)
            self.add(item)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    def when(self, item: Hashable) -> float:
        """Next rate-limited delay for item, without recording a failure."""
        failures = self._failures.get(item, 0)
        return min(self._base_delay * 2**failures, self._max_delay)

    def add_rate_limited(self, item: Hashable) -> float:
        delay = self.when(item)
        self._failures[item] = self._failures.get(item, 0) + 1
        self.add_after(item, delay)
        return delay

    def forget(self, item: Hashable) -> None:
        self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        return self._failures.get(item, 0)

    def is_processing(self, item: Hashable) -> bool:
        return item in self._processing

    def shutdown(self) -> None:
        """Stop accepting items and wake all waiters."""
        self._shutting_down = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._queue.clear()
        self._dirty.clear()
        self._has_items.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

