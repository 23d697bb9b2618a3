# reservation_scheduler/utils/locks.py
"""
Per-key mutual exclusion for the check-overlap-then-persist sequence.

The lock table grows with the number of distinct (resource, date) keys seen
by the process; entries are dropped once nobody holds or waits on them.
"""

from collections import defaultdict
from contextlib import contextmanager
from threading import Lock
from typing import Dict, Hashable, Iterator


class KeyedLock:
    def __init__(self):
        self._locks: Dict[Hashable, Lock] = {}
        self._waiters: Dict[Hashable, int] = defaultdict(int)
        self._table_lock = Lock()

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._table_lock:
            lock = self._locks.setdefault(key, Lock())
            self._waiters[key] += 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._table_lock:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._locks)
