"""
Per-user locks.

Closure runs for one user are serialized; runs for different users are
independent. A lock that cannot be taken in time is a transient
storage condition (StorageUnavailable), not a policy outcome.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

import redis

from id_nodes.core.errors import StorageUnavailable

logger = logging.getLogger("id_nodes.locks")


class LocalUserLocks:
    """One threading.Lock per user, for a single process."""

    def __init__(self, timeout_s: float = 5.0):
        self.timeout_s = timeout_s
        self._locks: dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, user_id: int) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(user_id, threading.Lock())

    @contextmanager
    def hold(self, user_id: int) -> Iterator[None]:
        lock = self._lock_for(user_id)
        if not lock.acquire(timeout=self.timeout_s):
            raise StorageUnavailable(f"Timed out waiting for the lock of user {user_id}")
        try:
            yield
        finally:
            lock.release()


class RedisUserLocks:
    """redis-py Lock per user, shared by every process of the service."""

    def __init__(self, client: redis.Redis, timeout_s: float = 5.0,
                 prefix: str = "id_nodes:user-lock:"):
        self.client = client
        self.timeout_s = timeout_s
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, timeout_s: float = 5.0) -> "RedisUserLocks":
        return cls(redis.Redis.from_url(url), timeout_s=timeout_s)

    @contextmanager
    def hold(self, user_id: int) -> Iterator[None]:
        lock = self.client.lock(f"{self.prefix}{user_id}",
                                timeout=self.timeout_s * 2,
                                blocking_timeout=self.timeout_s)
        try:
            acquired = lock.acquire()
        except redis.exceptions.RedisError as e:
            raise StorageUnavailable(f"Redis lock for user {user_id} unavailable: {e}") from e
        if not acquired:
            raise StorageUnavailable(f"Timed out waiting for the lock of user {user_id}")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError as e:
                # Lock expired while held; the next holder already owns it.
                logger.warning(f"Lock for user {user_id} expired before release: {e}")


def make_user_locks(settings):
    if settings.lock_backend == "redis":
        return RedisUserLocks.from_url(settings.redis_url, timeout_s=settings.lock_timeout_s)
    return LocalUserLocks(timeout_s=settings.lock_timeout_s)
