"""Execution engine — Instance pool.

Bounds the number of concurrently live execution contexts and recycles the
slot objects that carry them.  A slot handed out by :meth:`InstancePool.acquire`
is always blank: its store, instance and call state were dropped on release
and its generation counter has advanced, so nothing from a previous call can
be observed through it.

Usage::

    pool = InstancePool(max_instances=1000)
    slot = pool.acquire(timeout=5.0)
    try:
        ...
    finally:
        pool.release(slot)
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any


class Slot:
    """Reusable carrier of one execution context."""

    __slots__ = ("index", "generation", "in_use", "store", "instance", "memory", "token")

    def __init__(self, index: int) -> None:
        self.index = index
        self.generation = 0
        self.in_use = False
        self.store: Any = None
        self.instance: Any = None
        self.memory: Any = None
        self.token: Any = None

    @property
    def is_blank(self) -> bool:
        return self.store is None and self.instance is None and self.memory is None and self.token is None

    def reset(self) -> None:
        self.store = None
        self.instance = None
        self.memory = None
        self.token = None


class InstancePool:
    """Bounded pool of execution slots (``threading.BoundedSemaphore``)."""

    def __init__(self, max_instances: int) -> None:
        self._max = max_instances
        self._permits = threading.BoundedSemaphore(max_instances)
        self._free: deque[Slot] = deque()
        self._created = 0
        self._lock = threading.Lock()

    @property
    def max_instances(self) -> int:
        return self._max

    def acquire(self, timeout: float | None = None) -> Slot | None:
        """Return a blank slot, or ``None`` if none frees up within *timeout*."""
        if not self._permits.acquire(timeout=timeout):
            return None
        with self._lock:
            if self._free:
                slot = self._free.popleft()
            else:
                slot = Slot(self._created)
                self._created += 1
            slot.generation += 1
            slot.in_use = True
        return slot

    def release(self, slot: Slot) -> None:
        slot.reset()
        with self._lock:
            if not slot.in_use:
                return
            slot.in_use = False
            self._free.append(slot)
        self._permits.release()

    def status(self) -> dict[str, int]:
        with self._lock:
            idle = len(self._free)
            created = self._created
        return {
            "limit": self._max,
            "created": created,
            "idle": idle,
            "in_use": created - idle,
        }
