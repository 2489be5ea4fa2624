"""
Single-slot run guard: at most one status sync executes at a time.

Acquisition is one atomic non-blocking operation (never check-then-set). The local guard
covers one process; the Redis guard extends exclusion to API and Celery worker processes.
"""
import logging
import threading
from typing import Optional, Protocol

import redis

from .config import settings

logger = logging.getLogger(__name__)


class RunGuard(Protocol):
    def try_acquire(self) -> bool: ...

    def release(self) -> None: ...

    def locked(self) -> bool: ...


class LocalRunGuard:
    def __init__(self):
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        try:
            self._lock.release()
        except RuntimeError:
            logger.warning("Run guard released while not held")

    def locked(self) -> bool:
        return self._lock.locked()


class RedisRunGuard:
    """
    redis-py Lock (SET NX PX). The timeout bounds how long a crashed holder can block
    future runs. thread_local=False so a run acquired in the request thread can be
    released by the background thread that executes it.
    """

    def __init__(self, client=None, key: Optional[str] = None, timeout_s: Optional[int] = None):
        self.client = client or redis.Redis.from_url(settings.redis_url)
        self.key = key or settings.run_guard_key
        self._lock = self.client.lock(
            self.key,
            timeout=timeout_s or settings.run_guard_timeout_s,
            thread_local=False,
        )

    def try_acquire(self) -> bool:
        return bool(self._lock.acquire(blocking=False))

    def release(self) -> None:
        try:
            self._lock.release()
        except redis.exceptions.LockError as e:
            # Expired (run outlived the timeout) or taken over; nothing left to release.
            logger.warning(f"Run guard {self.key} was not held at release: {e}")

    def locked(self) -> bool:
        return bool(self._lock.locked())


def get_run_guard(backend: Optional[str] = None) -> RunGuard:
    backend = (backend or settings.run_guard_backend).lower()
    if backend == "redis":
        return RedisRunGuard()
    if backend == "local":
        return LocalRunGuard()
    raise ValueError(f"Unknown run guard backend: {backend}")
