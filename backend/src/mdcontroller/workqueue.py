"""
Per-key work queue with deduplication, delayed adds and exponential backoff.
"""
import heapq
import itertools
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple


class WorkQueue:
    """
    Deduplicating queue of reconcile keys.

    A key is handed to at most one worker at a time. Adding a key that is
    already queued is a no-op; adding a key that is being processed marks it
    dirty so it is queued exactly once more when the worker calls ``done``.

    Key internal state:
        ``_dirty``
            Keys that need processing, whether queued or in flight.
        ``_processing``
            Keys currently handed out to a worker.
        ``_waiting``
            Heap of ``(ready_at, seq, key)`` for delayed adds.
        ``_failures``
            Per-key consecutive failure counts used for backoff.
    """

    def __init__(
        self,
        base_delay: float = 0.005,
        max_delay: float = 1000.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._waiting: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._failures: Dict[str, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay: float) -> None:
        """Queue a key once delay seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._seq), key))
            self._cond.notify()

    def backoff_delay(self, key: str) -> float:
        """Delay the next rate-limited add of key would wait."""
        with self._cond:
            failures = self._failures.get(key, 0)
        return min(self.max_delay, self.base_delay * (2 ** failures))

    def add_rate_limited(self, key: str) -> float:
        """
        Requeue a key after its exponential backoff delay.

        Returns:
            The delay applied, in seconds
        """
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.max_delay, self.base_delay * (2 ** failures))
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the failure history of a key."""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_ready_locked(self) -> Optional[float]:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)
        if self._waiting:
            return self._waiting[0][0] - now
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Hand out the next key, blocking until one is ready.

        Args:
            timeout: Maximum seconds to wait, or None to wait until shutdown

        Returns:
            The key, or None on shutdown or timeout
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_ready = self._promote_ready_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None
                wait_for = next_ready
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)

    def done(self, key: str) -> None:
        """Mark a key finished; a key re-added while in flight is queued again."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
