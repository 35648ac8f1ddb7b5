"""
Work queue -- at-least-once delivery of "re-evaluate key X".

Guarantees:
    - A key is queued at most once, however often it is added.
    - A key handed out by ``get()`` is not handed out again until
      ``done()`` is called for it. Adds in the meantime mark it dirty and
      it is requeued on ``done()``.
    - ``add_after()`` delays a key; only the earliest pending delay per
      key is kept.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Optional


class WorkQueue:
    """Thread-safe de-duplicating queue with per-key serialization."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._delayed: list[tuple[float, int, str]] = []
        self._delayed_at: dict[str, float] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        """Add a key once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        ready = time.monotonic() + delay
        with self._cond:
            if self._shutting_down:
                return
            current = self._delayed_at.get(key)
            if current is not None and current <= ready:
                return
            self._delayed_at[key] = ready
            heapq.heappush(self._delayed, (ready, next(self._seq), key))
            self._cond.notify_all()

    def _promote_ready_locked(self) -> Optional[float]:
        """Move due delayed keys into the queue; return seconds to the next one."""
        now = time.monotonic()
        while self._delayed:
            ready, _, key = self._delayed[0]
            if self._delayed_at.get(key) != ready:
                heapq.heappop(self._delayed)
                continue
            if ready > now:
                return ready - now
            heapq.heappop(self._delayed)
            del self._delayed_at[key]
            self._add_locked(key)
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block until a key is available.

        Args:
            timeout: Maximum seconds to wait (None waits indefinitely).

        Returns:
            The key, or None on timeout or shutdown.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        with self._cond:
            while True:
                next_delay = self._promote_ready_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    return None

                wait = next_delay
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        """Mark a key finished; requeue it if it was re-added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        """Stop accepting keys and wake every waiting getter."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._delayed_at)

    def in_flight(self) -> int:
        with self._cond:
            return len(self._processing)
