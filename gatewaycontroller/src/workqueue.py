from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Hashable

from gatewaycontroller.src.metrics import METRICS


class ReconcileCancelled(Exception):
    """Raised when a reconcile's context is cancelled or its deadline passes."""


class ReconcileDeadlineExceeded(ReconcileCancelled):
    """The reconcile ran past its timeout while the controller kept running."""


class ReconcileContext:
    """Cancellation scope handed to every reconcile invocation.

    Store calls check it before going to the network and bound their HTTP
    timeout by the remaining deadline, so a cancelled reconcile stops at the
    next call boundary instead of running to completion.
    """

    def __init__(
        self,
        stop_event: threading.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.stop_event = stop_event or threading.Event()
        self.deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )

    @classmethod
    def background(cls) -> ReconcileContext:
        return cls()

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    @property
    def cancelled(self) -> bool:
        if self.stop_event.is_set():
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        if self.stop_event.is_set():
            raise ReconcileCancelled("reconcile cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise ReconcileDeadlineExceeded("reconcile deadline exceeded")

    def request_timeout(self, default: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return default
        return max(0.1, min(default, remaining))


class WorkQueue:
    """Deduplicating work queue with per-key serialization.

    Modelled on the client-go work queue:

    * a key waiting in the queue is stored once no matter how many times it
      is added, so a burst of watch events coalesces into one reconcile;
    * a key handed out by :meth:`get` is *processing* until :meth:`done`; an
      :meth:`add` in the meantime marks it dirty and it is queued again on
      ``done`` instead of being given to a second worker;
    * :meth:`add_rate_limited` schedules a delayed add with per-key
      exponential backoff (``base_delay`` doubling up to ``max_delay``),
      reset by :meth:`forget`.
    """

    def __init__(
        self,
        name: str,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ) -> None:
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._delayed: list[tuple[float, int, Hashable]] = []
        self._seq = itertools.count()
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.workqueue_depth.labels(controller=self.name).set(len(self._queue))

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._update_depth()
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = time.monotonic() + delay_seconds
            heapq.heappush(self._delayed, (due_at, next(self._seq), key))
            self._cond.notify()

    def backoff_for(self, key: Hashable) -> float:
        with self._cond:
            failures = self._failures.get(key, 0)
        return min(self.max_delay, self.base_delay * float(2**failures))

    def add_rate_limited(self, key: Hashable) -> float:
        """Requeue *key* after its current backoff; returns the delay used."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.max_delay, self.base_delay * float(2**failures))
        METRICS.workqueue_retries_total.labels(controller=self.name).inc()
        self.add_after(key, delay)
        return delay

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def _promote_due_locked(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is available and mark it processing.

        Returns ``None`` on timeout or once the queue is shut down.
        """
        give_up_at = time.monotonic() + timeout if timeout is not None else None
        with self._cond:
            while True:
                now = time.monotonic()
                self._promote_due_locked(now)
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    self._update_depth()
                    return key
                if self._shutting_down:
                    return None

                wait_for: float | None = None
                if self._delayed:
                    wait_for = max(0.0, self._delayed[0][0] - now)
                if give_up_at is not None:
                    remaining = give_up_at - now
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._update_depth()
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._queue.clear()
            self._dirty.clear()
            self._delayed.clear()
            self._update_depth()
            self._cond.notify_all()
