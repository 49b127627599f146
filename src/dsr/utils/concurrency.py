"""Thread concurrency primitives used by the build executor."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class CancellationToken:
    """Cooperative cancellation token backed by ``threading.Event``."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to ``timeout`` seconds; return ``True`` early once cancelled."""

        return self._event.wait(timeout)


class KeyedMutex:
    """One lock per key, created on first use.

    Holders of different keys never block each other; holders of the same key are
    serialized in acquisition order of the underlying ``threading.Lock``.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._lock_for(key):
            yield


__all__ = ["CancellationToken", "KeyedMutex"]
