"""Thread-safe reference counts of associated users and client addresses."""

from __future__ import annotations

import threading
from typing import Callable


class UserIPCount:
    """Counts live UDP associations per ``user:ip`` key."""

    def __init__(self) -> None:
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def incr(self, key: str) -> int:
        with self._lock:
            value = self._counts.get(key, 0) + 1
            self._counts[key] = value
            return value

    def decr(self, key: str) -> int:
        """Decrement the count; the key is dropped once it reaches zero."""
        with self._lock:
            value = self._counts[key] - 1 if key in self._counts else 0
            if value <= 0:
                self._counts.pop(key, None)
            else:
                self._counts[key] = value
            return value

    def get(self, key: str) -> int:
        with self._lock:
            return self._counts.get(key, 0)


class UserUDPCount:
    """Counts UDP associations per user and releases the user's resources at zero."""

    def __init__(self, on_release: Callable[[str], None]) -> None:
        self._counts: dict[str, int] = {}
        self._lock = threading.RLock()
        self._on_release = on_release

    def incr(self, user: str) -> int:
        with self._lock:
            value = self._counts.get(user, 0) + 1
            self._counts[user] = value
            return value

    def decr(self, user: str) -> int:
        """Decrement the count; at zero ``on_release(user)`` is called and 0 returned."""
        with self._lock:
            value = self._counts[user] - 1 if user in self._counts else 0
            if value > 0:
                self._counts[user] = value
                return value
            self._on_release(user)
            self._counts.pop(user, None)
            return 0

    def get(self, user: str) -> int:
        with self._lock:
            return self._counts.get(user, 0)