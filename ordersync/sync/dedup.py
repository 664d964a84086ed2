"""Bounded recent-key set guaranteeing at-most-once application per idempotency key."""

from __future__ import annotations

import threading
from collections import OrderedDict


class IdempotencyDeduper:
    """Thread-safe bounded set of recently applied keys.

    The first `should_apply(key)` call returns True and marks the key; later
    calls return False until the key is evicted by newer keys beyond `capacity`.
    """

    def __init__(self, capacity: int = 1024) -> None:
        if capacity < 1:
            msg = "capacity must be >= 1."
            raise ValueError(msg)
        self.capacity = int(capacity)
        self._keys: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()

    def should_apply(self, key: str) -> bool:
        """Return True exactly once per key within the retention window."""
        normalized = str(key)
        with self._lock:
            if normalized in self._keys:
                return False
            self._keys[normalized] = None
            while len(self._keys) > self.capacity:
                self._keys.popitem(last=False)
            return True

    def seen(self, key: str) -> bool:
        with self._lock:
            return str(key) in self._keys

    def forget(self, key: str) -> None:
        """Drop one key so a later delivery is applied again."""
        with self._lock:
            self._keys.pop(str(key), None)

    def clear(self) -> None:
        with self._lock:
            self._keys.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)
