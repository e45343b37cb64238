"""Per-machine serialization for check-then-commit sequences."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from time import monotonic
from typing import Dict, Iterable, Iterator, List, Optional

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)


class Deadline:
    """A per-call time budget shared by lock waits and store statements."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self._expires = monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires - monotonic())

    def check(self) -> float:
        left = self.remaining()
        if left <= 0:
            logger.warning("Call budget of %.3fs exhausted", self.seconds)
            raise StoreUnavailable(f"Timed out after {self.seconds}s")
        return left


class MachineLockRegistry:
    """Hands out one lock per machine id.

    Locks for a multi-machine operation are always taken in ascending id
    order, so two callers can never wait on each other in a cycle.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}

    def _lock_for(self, machine_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(machine_id)
            if lock is None:
                lock = self._locks[machine_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, machine_ids: Iterable[int], timeout: Optional[float] = None) -> Iterator[List[int]]:
        ordered = sorted(set(machine_ids))
        deadline = None if timeout is None else monotonic() + timeout
        acquired: List[threading.Lock] = []
        try:
            for machine_id in ordered:
                lock = self._lock_for(machine_id)
                if deadline is None:
                    got = lock.acquire()
                else:
                    got = lock.acquire(timeout=max(0.0, deadline - monotonic()))
                if not got:
                    logger.warning("Timed out waiting for machine %s lock", machine_id)
                    raise StoreUnavailable(f"Timed out waiting for machine {machine_id}")
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()


machine_locks = MachineLockRegistry()
