from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol

from exposer.src.metrics import METRICS

DEFAULT_BASE_DELAY_SECONDS = 0.005
DEFAULT_MAX_DELAY_SECONDS = 1000.0
DEFAULT_BUCKET_QPS = 10.0
DEFAULT_BUCKET_BURST = 100

# Exponent clamp; 2.0 ** n overflows long before failure counts stop growing.
_MAX_BACKOFF_EXPONENT = 64


class RateLimiter(Protocol):
    def when(self, key: str) -> float: ...

    def forget(self, key: str) -> None: ...

    def num_requeues(self, key: str) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base * 2**failures``, capped at ``max_delay``."""

    def __init__(
        self,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = self.base_delay * (2.0 ** min(failures, _MAX_BACKOFF_EXPONENT))
        return min(delay, self.max_delay)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class BucketRateLimiter:
    """Overall token bucket shared by all keys.

    Bounds the aggregate retry rate when many keys fail at once, independent
    of each key's own backoff.
    """

    def __init__(
        self,
        qps: float = DEFAULT_BUCKET_QPS,
        burst: int = DEFAULT_BUCKET_BURST,
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

    def when(self, key: str) -> float:
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last)
            self._last = now
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, key: str) -> None:
        return None

    def num_requeues(self, key: str) -> int:
        return 0


class MaxOfRateLimiter:
    """Combine limiters; the longest delay and the highest requeue count win."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, key: str) -> float:
        return max(limiter.when(key) for limiter in self.limiters)

    def forget(self, key: str) -> None:
        for limiter in self.limiters:
            limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return max(limiter.num_requeues(key) for limiter in self.limiters)


def default_controller_rate_limiter(
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
) -> MaxOfRateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay),
        BucketRateLimiter(),
    )


class RateLimitingQueue:
    """Deduplicating, delaying, rate-limited FIFO of reconciliation keys.

    Bookkeeping, all guarded by one condition variable:

    ``_queue``
        Keys ready to be handed out, in FIFO order.
    ``_dirty``
        Keys that need processing.  A key is in ``_queue`` only if it is also
        dirty, which is what collapses repeated adds into one entry.
    ``_processing``
        Keys currently held by a worker.  Re-adding such a key only marks it
        dirty; :meth:`done` puts it back on ``_queue`` so it is delivered
        again after the in-flight attempt, never concurrently with it.
    ``_waiting``
        Min-heap of ``(ready_at, seq, key)`` for delayed adds.  ``get`` moves
        due entries onto ``_queue`` and sleeps no longer than the nearest
        deadline, so no separate timer thread is needed.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_ready_at: dict[str, float] = {}
        self._seq = itertools.count()
        self._shutting_down = False
        METRICS.queue_depth.labels(queue=name).set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _update_depth_locked(self) -> None:
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        METRICS.queue_adds_total.labels(queue=self.name).inc()
        if key in self._processing:
            return
        self._queue.append(key)
        self._update_depth_locked()
        self._cond.notify()

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._waiting)
            # Superseded by an earlier deadline for the same key.
            if self._waiting_ready_at.get(key) != ready_at:
                continue
            del self._waiting_ready_at[key]
            self._add_locked(key)

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay: float) -> None:
        """Add *key* once *delay* seconds have passed.

        If the key is already waiting with an earlier deadline, that deadline
        is kept.
        """
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            existing = self._waiting_ready_at.get(key)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), key))
            # Wake a sleeper so it can shorten its wait to the new deadline.
            self._cond.notify()

    def add_rate_limited(self, key: str) -> None:
        METRICS.retries_total.labels(queue=self.name).inc()
        self.add_after(key, self.rate_limiter.when(key))

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)

    def get(self, timeout: float | None = None) -> tuple[str | None, bool]:
        """Block until a key is ready and return ``(key, False)``.

        Returns ``(None, True)`` once the queue is shutting down, and
        ``(None, False)`` if *timeout* elapses first.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                self._promote_due_locked()
                if self._queue:
                    break

                wait: float | None = None
                if self._waiting:
                    wait = max(0.0, self._waiting[0][0] - self._clock())
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None, False
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            self._update_depth_locked()
            return key, False

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._update_depth_locked()
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop handing out keys; blocked and future ``get`` calls return shutdown."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
