from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from reconciler.src.core import Deleted, ObjectIdentity, identity_of
from reconciler.src.metrics import METRICS

QueueItem = dict[str, Any] | Deleted


class ObjectQueue:
    """De-duplicating work queue keyed by object identity.

    Adding an object that is already queued replaces the queued version
    instead of adding a second entry, so a burst of watch events for one
    object collapses into a single correction carrying the newest state.  An
    object being processed is never handed to a second worker: if it is added
    again meanwhile, it is re-queued when the first worker calls :meth:`done`.

    Failed items go through :meth:`retry`, which re-adds them after a
    per-identity exponential backoff (``base_delay * 2**failures`` capped at
    ``max_delay``).  :meth:`forget` resets that backoff after a success.
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 60.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.monotonic = monotonic

        self._cond = threading.Condition()
        self._order: deque[ObjectIdentity] = deque()
        self._items: dict[ObjectIdentity, QueueItem] = {}
        self._dirty: set[ObjectIdentity] = set()
        self._processing: set[ObjectIdentity] = set()
        self._failures: dict[ObjectIdentity, int] = {}
        self._delayed: list[tuple[float, int, ObjectIdentity, QueueItem]] = []
        self._sequence = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._order)

    def _publish_depth(self) -> None:
        METRICS.remediator_queue_depth.set(len(self._order))

    def add(self, obj: QueueItem) -> None:
        identity = identity_of(obj)
        with self._cond:
            if self._shutdown:
                return
            self._items[identity] = obj
            if identity in self._dirty:
                return
            self._dirty.add(identity)
            if identity in self._processing:
                return
            self._order.append(identity)
            self._publish_depth()
            self._cond.notify()

    def _promote_due(self) -> float | None:
        """Move due delayed items into the queue; return seconds until the next one."""
        now = self.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, identity, obj = heapq.heappop(self._delayed)
            self._items.setdefault(identity, obj)
            if identity in self._dirty:
                continue
            self._dirty.add(identity)
            if identity not in self._processing:
                self._order.append(identity)
        self._publish_depth()
        if self._delayed:
            return max(0.0, self._delayed[0][0] - now)
        return None

    def get(self, timeout: float | None = None) -> QueueItem | None:
        """Block until an item is ready and mark it as processing.

        Returns ``None`` on timeout or once the queue is shut down.
        """
        deadline = None if timeout is None else self.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due()
                if self._order:
                    identity = self._order.popleft()
                    self._dirty.discard(identity)
                    self._processing.add(identity)
                    self._publish_depth()
                    return self._items.pop(identity)
                if self._shutdown:
                    return None
                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self.monotonic()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, obj: QueueItem) -> None:
        """Release an item returned by :meth:`get`."""
        identity = identity_of(obj)
        with self._cond:
            self._processing.discard(identity)
            if identity in self._dirty and not self._shutdown:
                self._order.append(identity)
                self._publish_depth()
                self._cond.notify()

    def retry(self, obj: QueueItem) -> float:
        """Schedule *obj* again after its backoff and return the delay used."""
        identity = identity_of(obj)
        with self._cond:
            failures = self._failures.get(identity, 0)
            self._failures[identity] = failures + 1
            delay = min(self.base_delay * (2**failures), self.max_delay)
            if not self._shutdown:
                heapq.heappush(
                    self._delayed, (self.monotonic() + delay, next(self._sequence), identity, obj)
                )
                self._cond.notify()
            return delay

    def forget(self, identity: ObjectIdentity) -> None:
        with self._cond:
            self._failures.pop(identity, None)

    def failures(self, identity: ObjectIdentity) -> int:
        with self._cond:
            return self._failures.get(identity, 0)

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._delayed.clear()
            self._cond.notify_all()

    @property
    def is_shutdown(self) -> bool:
        with self._cond:
            return self._shutdown
