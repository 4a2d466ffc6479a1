"""
Shared Permission Tier
Redis-backed second tier for resolved permission sets, shared across processes
"""

import json
import time
from typing import Any, Callable, Optional

import structlog
import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = structlog.get_logger()

_GLOB_SPECIAL = "*?[]\\"


def glob_escape(value: str) -> str:
    """Escape a literal for use inside a Redis SCAN MATCH pattern"""
    return "".join(f"\\{ch}" if ch in _GLOB_SPECIAL else ch for ch in value)


class RedisPermissionTier:
    """
    Redis tier with graceful fallback

    A connection or command failure never reaches the caller: reads report a
    miss, writes report False. After a failure the tier stays offline for
    ``retry_after`` seconds and then tries to reconnect.

    Args:
        url: Redis connection URL
        key_prefix: Namespace for every key written by this tier
        client: Pre-built client (tests, shared pools)
        retry_after: Offline period after a failure
        clock: Monotonic time source
    """

    def __init__(
        self,
        url: str,
        key_prefix: str = "rbac:",
        client: Optional[aioredis.Redis] = None,
        retry_after: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._url = url
        self._key_prefix = key_prefix
        self._client: Optional[aioredis.Redis] = client
        self._retry_after = retry_after
        self._clock = clock
        self._offline_until: Optional[float] = None

    @property
    def available(self) -> bool:
        return self._offline_until is None or self._clock() >= self._offline_until

    async def _connection(self) -> Optional[aioredis.Redis]:
        if not self.available:
            return None
        if self._client is None:
            try:
                client = aioredis.from_url(
                    self._url,
                    decode_responses=True,
                    socket_connect_timeout=2,
                    socket_timeout=3,
                )
                await client.ping()
            except (RedisError, OSError) as e:
                self._go_offline("connect", e)
                return None
            self._client = client
            logger.info("Shared permission tier connected", url=self._url)
        self._offline_until = None
        return self._client

    def _go_offline(self, operation: str, error: Exception) -> None:
        self._offline_until = self._clock() + self._retry_after
        logger.warning(
            "Shared permission tier offline",
            operation=operation,
            retry_after=self._retry_after,
            error=str(error),
        )

    async def fetch(self, key: str) -> Optional[dict[str, Any]]:
        """Stored payload for ``key``; None on miss, malformed payload or outage."""
        client = await self._connection()
        if client is None:
            return None
        try:
            raw = await client.get(self._key_prefix + key)
        except (RedisError, OSError) as e:
            self._go_offline("fetch", e)
            return None
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable shared entry", key=key)
            return None
        return payload if isinstance(payload, dict) else None

    async def store(self, key: str, payload: dict[str, Any], ttl_seconds: float) -> bool:
        client = await self._connection()
        if client is None:
            return False
        serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        try:
            await client.set(self._key_prefix + key, serialized, ex=max(1, int(ttl_seconds)))
        except (RedisError, OSError) as e:
            self._go_offline("store", e)
            return False
        return True

    async def evict(self, *segments: Optional[str]) -> int:
        """
        Delete every key under the given ``:``-separated segments

        ``None`` matches any single segment, so ``evict("eps", "bob", None, "p1")``
        removes ``eps:bob:<any tenant>:p1:*``.
        """
        pattern = ":".join("*" if s is None else glob_escape(s) for s in segments)
        client = await self._connection()
        if client is None:
            return 0
        removed = 0
        try:
            batch: list[str] = []
            async for key in client.scan_iter(match=f"{glob_escape(self._key_prefix)}{pattern}:*", count=200):
                batch.append(key)
                if len(batch) >= 200:
                    removed += await client.unlink(*batch)
                    batch.clear()
            if batch:
                removed += await client.unlink(*batch)
        except (RedisError, OSError) as e:
            self._go_offline("evict", e)
        return removed

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
