"""Proxy user authentication, cached user lookup and traffic accounting."""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime
from typing import Mapping

from .store import Store, User

log = logging.getLogger(__name__)

USER_CACHE_SIZE = 512
TRAFFIC_FLUSH_SECONDS = 300


class UserTraffic:
    """Bytes carried per user since the last flush."""

    def __init__(self) -> None:
        self._users: dict[str, int] = {}
        self._lock = threading.Lock()

    def add(self, user_name: str, traffic: int) -> int:
        """Add ``traffic`` bytes to the user and return the new total."""
        with self._lock:
            total = self._users.get(user_name, 0) + traffic
            self._users[user_name] = total
            return total

    def get_and_delete(self, user_name: str) -> int:
        with self._lock:
            return self._users.pop(user_name, 0)

    def snapshot_and_clear(self) -> dict[str, int]:
        """Return all counted traffic and start counting afresh."""
        with self._lock:
            snapshot, self._users = self._users, {}
            return snapshot


class UserCache:
    """A bounded least-recently-used cache of users read from the store."""

    def __init__(self, store: Store, size: int = USER_CACHE_SIZE) -> None:
        if size <= 0:
            raise ValueError("cache size must be positive")
        self._store = store
        self._size = size
        self._users: OrderedDict[str, User] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, user_name: str) -> User:
        """Return the user, loading it from the store if not cached."""
        with self._lock:
            user = self._users.get(user_name)
            if user is not None:
                self._users.move_to_end(user_name)
                return user
        user = self._store.get_user(user_name)
        if user is None:
            raise LookupError(f"user {user_name} not exist")
        with self._lock:
            self._users[user_name] = user
            self._users.move_to_end(user_name)
            while len(self._users) > self._size:
                self._users.popitem(last=False)
        return user

    def remove(self, user_name: str) -> None:
        with self._lock:
            self._users.pop(user_name, None)


def _rfc3339(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp).astimezone().isoformat(timespec="seconds")


def authenticate_user(
    store: Store, user_name: str, password: str, now: int | None = None
) -> None:
    """Raise PermissionError unless the user may use the proxy at ``now``."""
    try:
        user = store.get_user(user_name)
    except Exception as exc:
        raise PermissionError(f"get user from redis error {exc}") from exc
    if user is None:
        raise PermissionError(f"user {user_name} not exist")
    if user.off:
        raise PermissionError(f"user {user_name} off")

    digest = hashlib.md5(password.encode()).hexdigest()
    if user.user_name != user_name or user.password_md5 != digest:
        raise PermissionError("password not match")

    moment = int(time.time()) if now is None else int(now)
    if moment < user.start_time or moment > user.end_time:
        raise PermissionError(
            f"user {user_name} is out of date"
            f"[{_rfc3339(user.start_time)}~{_rfc3339(user.end_time)}]"
        )

    if user.total_traffic != 0 and user.current_traffic >= user.total_traffic:
        raise PermissionError(
            f"user {user.user_name} is out of traffic {user.total_traffic}, "
            f"currentTraffic {user.current_traffic}"
        )


def flush_traffic(store: Store, traffic: Mapping[str, int]) -> list[str]:
    """Add counted traffic to the users' stored totals; return the users updated.

    Users that no longer exist or cannot be read are logged and skipped.
    """
    updated = []
    for user_name, amount in traffic.items():
        if amount <= 0:
            continue
        try:
            user = store.get_user(user_name)
        except Exception as exc:
            log.error("get user %s: %s", user_name, exc)
            continue
        if user is None:
            log.error("user %s not exist", user_name)
            continue
        store.save_user(replace(user, current_traffic=user.current_traffic + amount))
        updated.append(user_name)
    return updated