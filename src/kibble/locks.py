from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

FACT_TOPIC = "fact"
NEWS_TOPIC = "news"


def lock_key(kind: str, item_id: int) -> str:
    return f"{kind}:{item_id}"


class KeyedLocks:
    """Per-key try-locks created lazily under one coarse lock."""

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

    def try_acquire(self, kind: str, item_id: int) -> bool:
        return self._lock_for(lock_key(kind, item_id)).acquire(blocking=False)

    def release(self, kind: str, item_id: int) -> None:
        self._lock_for(lock_key(kind, item_id)).release()

    def is_held(self, kind: str, item_id: int) -> bool:
        return self._lock_for(lock_key(kind, item_id)).locked()

    @contextmanager
    def hold(self, kind: str, item_id: int) -> Iterator[bool]:
        acquired = self.try_acquire(kind, item_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(kind, item_id)
