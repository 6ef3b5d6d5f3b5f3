from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable, Hashable
from typing import Protocol


class RateLimiter(Protocol):
    """Decides how long an item should wait before it is retried."""

    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures`` capped at ``max_delay``.

    Each call to :meth:`when` counts as one failure for the item.  The counter
    is only reset by :meth:`forget`.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # Avoid float overflow for items that have failed a very long time.
        if exponent > 62:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**exponent))

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by all items (``qps`` refill, ``burst`` capacity).

    Returns the delay until a token is available and reserves it, so a
    flood of failing items cannot hammer the API even while their
    individual backoff is still short.
    """

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        return None

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Combine limiters, waiting for the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter(
    base_delay: float = 0.005, max_delay: float = 1000.0
) -> MaxOfRateLimiter:
    """Per-item exponential backoff combined with a 10 qps / 100 burst overall bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay),
        BucketRateLimiter(qps=10.0, burst=100),
    )


class RateLimitingQueue:
    """Deduplicating work queue with delayed and rate-limited re-insertion.

    Guarantees:

    * An item is queued at most once.  Adding an item that is already
      waiting is a no-op.
    * An item is handed to at most one worker at a time.  Adding an item
      while it is being processed marks it *dirty*; it is re-queued when
      the worker calls :meth:`done`.
    * After :meth:`shut_down`, new adds are ignored, pending delayed items
      are dropped, and :meth:`get` keeps returning the remaining queued
      items before reporting shutdown to every caller.

    Key internal state:
        ``_queue``
            Items ready to be handed out, in insertion order.
        ``_dirty``
            Items that need processing (queued, or re-added while in flight).
        ``_processing``
            Items currently held by a worker between ``get`` and ``done``.
        ``_waiting``
            Heap of ``(ready_at, seq, item)`` for delayed adds, served by a
            lazily started waiter thread.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "workqueue",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock

        self._cond = threading.Condition(threading.Lock())
        self._queue: list[Hashable] = []
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

        self._waiting_cond = threading.Condition(threading.Lock())
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_ready_at: dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._waiter: threading.Thread | None = None
        self._waiter_stopped = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until an item is available; return ``(item, shutting_down)``."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True

            item = self._queue.pop(0)
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._waiting_cond:
            self._waiter_stopped = True
            self._waiting.clear()
            self._waiting_ready_at.clear()
            self._waiting_cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add *item* once *delay* seconds have elapsed.

        If the item is already waiting, the earlier of the two ready times
        wins.
        """
        if self.shutting_down():
            return
        if delay <= 0:
            self.add(item)
            return

        ready_at = self._clock() + delay
        with self._waiting_cond:
            existing = self._waiting_ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            if self._waiter is None:
                self._waiter = threading.Thread(
                    target=self._wait_loop, name=f"{self.name}-waiter", daemon=True
                )
                self._waiter.start()
            self._waiting_cond.notify()

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        """Reset the failure history for *item*; queued copies are left alone."""
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def pending_delayed(self) -> int:
        with self._waiting_cond:
            return len(self._waiting_ready_at)

    def _pop_ready(self, now: float) -> list[Hashable]:
        ready: list[Hashable] = []
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, item = heapq.heappop(self._waiting)
            # Superseded entries stay in the heap until they surface here.
            if self._waiting_ready_at.get(item) != ready_at:
                continue
            del self._waiting_ready_at[item]
            ready.append(item)
        return ready

    def _wait_loop(self) -> None:
        while True:
            with self._waiting_cond:
                if self._waiter_stopped:
                    return
                ready = self._pop_ready(self._clock())
                if not ready:
                    timeout = None
                    if self._waiting:
                        timeout = max(0.0, self._waiting[0][0] - self._clock())
                    self._waiting_cond.wait(timeout=timeout)
                    continue
            for item in ready:
                self.add(item)
