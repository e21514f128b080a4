"""
Locks.

* ``DistributedLock`` -- Redis-based; lets only one dispatch-worker
  instance run a cycle at a time, and serialises shared-ride group
  mutations across API processes.  SET NX EX for acquire and a Lua script
  for atomic check-and-delete on release.
* ``KeyedLock`` -- in-process ``asyncio.Lock`` per key, used when no Redis
  is wired (single process, tests).

A *lock factory* is any callable ``key -> async context manager``.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from typing import Callable

import redis.asyncio as aioredis

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class DistributedLock:
    def __init__(
        self,
        client: aioredis.Redis,
        key: str,
        ttl_seconds: int = 30,
        wait_seconds: float = 0.0,
        retry_interval: float = 0.05,
    ):
        self.redis = client
        self.key = f"lock:{key}"
        self.ttl = ttl_seconds
        self.wait_seconds = wait_seconds
        self.retry_interval = retry_interval
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try to acquire. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def acquire_wait(self) -> bool:
        """Retry ``acquire`` until it succeeds or ``wait_seconds`` elapse."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds
        while True:
            if await self.acquire():
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.retry_interval)

    async def release(self) -> None:
        """Release only if we still own the lock (atomic via Lua)."""
        await self.redis.eval(_RELEASE_SCRIPT, 1, self.key, self.token)

    # context-manager support
    async def __aenter__(self):
        acquired = await self.acquire_wait()
        if not acquired:
            raise RuntimeError(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *args):
        await self.release()


class KeyedLock:
    """In-process lock per key; a lock lives only while someone holds or awaits it."""

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


def redis_lock_factory(
    client: aioredis.Redis, ttl_seconds: int = 10, wait_seconds: float = 5.0
) -> Callable[[str], DistributedLock]:
    def factory(key: str) -> DistributedLock:
        return DistributedLock(
            client, key, ttl_seconds=ttl_seconds, wait_seconds=wait_seconds
        )

    return factory
