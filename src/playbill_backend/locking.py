"""Per-key mutual exclusion for serializing work on a single owner."""

from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Hashable, Iterator, Tuple


class KeyedLock:
    """
    A lock per hashable key, created on demand and dropped when unused.

    Thread Safety:
        The registry of per-key locks is guarded by its own lock; holders of
        different keys never block each other.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[Hashable, Tuple[Lock, int]] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock, waiters = self._locks.get(key, (None, 0))
            if lock is None:
                lock = Lock()
            self._locks[key] = (lock, waiters + 1)

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, waiters = self._locks[key]
                if waiters <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, waiters - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
