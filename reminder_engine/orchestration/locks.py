from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from reminder_engine.domain.errors import RoutineBusyError


class RoutineLocks:
    """Non-blocking per-routine mutual exclusion within one process."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def _lock_for(self, routine_id: int) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(routine_id, threading.Lock())

    def is_held(self, routine_id: int) -> bool:
        return self._lock_for(routine_id).locked()

    @contextmanager
    def hold(self, routine_id: int) -> Iterator[None]:
        lock = self._lock_for(routine_id)
        if not lock.acquire(blocking=False):
            raise RoutineBusyError(routine_id)
        try:
            yield
        finally:
            lock.release()
