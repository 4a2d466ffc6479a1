"""
Tests for the Redis permission tier
Uses a mocked client; no Redis server is needed
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tenant_rbac.core.cache import RedisPermissionTier, glob_escape


def _client(keys=()):
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.unlink = AsyncMock(side_effect=lambda *batch: len(batch))
    client.aclose = AsyncMock()
    client.scan_patterns = []

    async def scan_iter(match=None, count=None):
        client.scan_patterns.append(match)
        for key in keys:
            yield key

    client.scan_iter = scan_iter
    return client


@pytest.fixture
def client():
    return _client(keys=["rbac:eps:bob:tenant-a:-:v1", "rbac:eps:bob:tenant-a:p1:v1"])


@pytest.fixture
def tier(client, clock):
    return RedisPermissionTier("redis://unused", client=client, retry_after=30.0, clock=clock)


class TestRedisPermissionTier:
    """Tests for reads, writes and eviction"""

    @pytest.mark.asyncio
    async def test_store_serializes_with_prefix_and_ttl(self, tier, client):
        assert await tier.store("eps:bob:tenant-a:-:v1", {"b": 1, "a": [2]}, ttl_seconds=300.0) is True

        client.set.assert_awaited_once_with("rbac:eps:bob:tenant-a:-:v1", '{"a":[2],"b":1}', ex=300)

    @pytest.mark.asyncio
    async def test_fetch_decodes_payload(self, tier, client):
        client.get.return_value = json.dumps({"principal": "bob"})

        assert await tier.fetch("eps:bob:tenant-a:-:v1") == {"principal": "bob"}

    @pytest.mark.asyncio
    async def test_fetch_ignores_unreadable_payload(self, tier, client):
        client.get.return_value = "not json"

        assert await tier.fetch("eps:bob:tenant-a:-:v1") is None

    @pytest.mark.asyncio
    async def test_evict_builds_segment_pattern(self, tier, client):
        removed = await tier.evict("eps", "bob", None, "p1")

        assert removed == 2
        assert client.scan_patterns == ["rbac:eps:bob:*:p1:*"]

    @pytest.mark.asyncio
    async def test_evict_escapes_glob_characters(self, tier, client):
        await tier.evict("eps", "bo*b")

        assert client.scan_patterns == ["rbac:eps:bo\\*b:*"]

    def test_glob_escape(self):
        assert glob_escape("a[1]?") == "a\\[1\\]\\?"


class TestFallback:
    """Tests for outage handling"""

    @pytest.mark.asyncio
    async def test_failure_takes_tier_offline_until_cooldown(self, tier, client, clock):
        client.get.side_effect = RedisConnectionError("connection reset")

        assert await tier.fetch("eps:bob:tenant-a:-:v1") is None
        assert tier.available is False

        client.get.side_effect = None
        client.get.return_value = json.dumps({"principal": "bob"})
        assert await tier.fetch("eps:bob:tenant-a:-:v1") is None
        assert client.get.await_count == 1

        clock.advance(31)
        assert await tier.fetch("eps:bob:tenant-a:-:v1") == {"principal": "bob"}
        assert tier.available is True

    @pytest.mark.asyncio
    async def test_write_failure_reports_false(self, tier, client):
        client.set.side_effect = RedisConnectionError("connection reset")

        assert await tier.store("k", {}, ttl_seconds=10) is False

    @pytest.mark.asyncio
    async def test_close(self, tier, client):
        await tier.close()

        client.aclose.assert_awaited_once()
