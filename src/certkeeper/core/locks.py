"""Thread synchronisation primitives.

:class:`ReadWriteLock` guards read-mostly structures (the metadata
index, the passphrase vault); :class:`KeyedLocks` hands out one
re-entrant lock per certificate.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Generator


class ReadWriteLock:
    """Many concurrent readers, one exclusive writer.

    Writers are preferred: once a writer is waiting, new readers block
    until it has finished, so index updates are never starved.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Generator[None, None, None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Generator[None, None, None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class KeyedLocks:
    """Registry of re-entrant locks, one per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str, timeout: float = -1) -> Generator[None, None, None]:
        """Hold the lock for *key*; raise :class:`TimeoutError` on timeout."""
        lock = self.get(key)
        if not lock.acquire(timeout=timeout):
            msg = f"Timed out waiting for lock on {key}"
            raise TimeoutError(msg)
        try:
            yield
        finally:
            lock.release()

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)
