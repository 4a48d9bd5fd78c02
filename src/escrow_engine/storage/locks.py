"""Named leases that keep scheduled passes from overlapping.

Row-level locking already makes concurrent passes safe; the sweep lock
only avoids wasted gateway calls when two scheduler replicas tick at the
same moment.  ``acquire`` returns an opaque token or ``None`` when the
lease is held elsewhere.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

# Delete the key only if it still holds our token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class LocalSweepLock:
    """In-process lease for single-replica deployments and tests."""

    def __init__(self) -> None:
        self._held: dict[str, tuple[str, float]] = {}
        self._guard = asyncio.Lock()

    async def acquire(self, name: str, ttl_seconds: int) -> str | None:
        async with self._guard:
            now = time.monotonic()
            current = self._held.get(name)
            if current is not None and current[1] > now:
                return None
            token = str(uuid.uuid4())
            self._held[name] = (token, now + ttl_seconds)
            return token

    async def release(self, name: str, token: str) -> None:
        async with self._guard:
            current = self._held.get(name)
            if current is not None and current[0] == token:
                del self._held[name]


class RedisSweepLock:
    """Cluster-wide lease using ``SET key token NX PX ttl``.

    Args:
        redis_url: Redis connection URL.
        prefix: Key namespace prefix.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "escrow:lock:",
        client: aioredis.Redis | None = None,
    ) -> None:
        self._url = redis_url
        self._prefix = prefix
        self._redis: aioredis.Redis | None = client

    async def connect(self) -> None:
        if self._redis is not None:
            return
        self._redis = aioredis.from_url(self._url, decode_responses=True)
        await self._redis.ping()
        logger.info("Redis lock connected: %s", self._url.split("@")[-1])

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _r(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("RedisSweepLock not connected. Call connect() first.")
        return self._redis

    async def acquire(self, name: str, ttl_seconds: int) -> str | None:
        token = str(uuid.uuid4())
        acquired = await self._r().set(
            f"{self._prefix}{name}", token, nx=True, px=ttl_seconds * 1000
        )
        return token if acquired else None

    async def release(self, name: str, token: str) -> None:
        released = await self._r().eval(_RELEASE_SCRIPT, 1, f"{self._prefix}{name}", token)
        if not released:
            logger.warning("Sweep lock %s expired before release", name)
