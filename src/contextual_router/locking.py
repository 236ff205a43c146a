"""Per-key asyncio locks with bounded acquisition."""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Type

from .errors import ServiceUnavailable


class KeyedLocks:
    """
    One FIFO asyncio lock per key.

    Holders of different keys never contend. Waiting for a key is bounded by
    ``timeout``; on expiry ``error_cls`` is raised so the caller can back off.
    A key's lock is dropped once nobody holds or waits for it.
    """

    def __init__(self, timeout: float, error_cls: Type[ServiceUnavailable] = ServiceUnavailable):
        self.timeout = timeout
        self.error_cls = error_cls
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _release_user(self, key: str) -> None:
        remaining = self._users.get(key, 1) - 1
        if remaining > 0:
            self._users[key] = remaining
        else:
            self._users.pop(key, None)
            self._locks.pop(key, None)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._lock_for(key)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise self.error_cls(
                    f"Timed out after {self.timeout}s waiting for {key}",
                    details={"key": key, "timeout_seconds": self.timeout}
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._release_user(key)

    def __len__(self) -> int:
        return len(self._locks)
