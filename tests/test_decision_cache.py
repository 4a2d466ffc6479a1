"""
Tests for DecisionCache
Covers: validation against catalog version and role snapshot, TTL, LRU eviction,
invalidation scopes, generation-guarded puts and the shared tier.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from tenant_rbac.core.permission_resolver import combine_layers
from tenant_rbac.core.rbac import RoleSnapshot
from tenant_rbac.services.decision_cache import CacheKey, DecisionCache


# ── Helpers ─────────────────────────────────────────────────────


def _eps(catalog, principal="bob", tenant="tenant-a", project=None, tenant_role="viewer"):
    return combine_layers(
        catalog.snapshot(),
        RoleSnapshot("user", tenant_role, None),
        principal=principal,
        tenant=tenant,
        project=project,
    )


def _key(principal="bob", tenant="tenant-a", project=None, version=1):
    return CacheKey(principal, tenant, project, version)


# ── Hits & validation ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_hit_with_matching_snapshot(cache, catalog):
    eps = _eps(catalog)
    await cache.put(_key(), eps)

    assert await cache.get(_key(), eps.snapshot_token) is eps
    assert cache.stats().hits == 1


@pytest.mark.asyncio
async def test_miss_on_empty_cache(cache):
    assert await cache.get(_key(), "anything") is None
    assert cache.stats().misses == 1


@pytest.mark.asyncio
async def test_snapshot_mismatch_is_stale_and_evicted(cache, catalog):
    eps = _eps(catalog, tenant_role="viewer")
    await cache.put(_key(), eps)

    fresh_token = RoleSnapshot("user", "admin", None).token
    assert await cache.get(_key(), fresh_token) is None

    stats = cache.stats()
    assert stats.stale == 1
    assert stats.size == 0


@pytest.mark.asyncio
async def test_catalog_version_mismatch_is_stale(cache, catalog):
    eps = _eps(catalog)  # computed at catalog version 1
    await cache.put(_key(version=2), eps)

    assert await cache.get(_key(version=2), eps.snapshot_token) is None
    assert cache.stats().stale == 1


@pytest.mark.asyncio
async def test_ttl_expiry(cache, catalog, clock):
    eps = _eps(catalog)
    await cache.put(_key(), eps)

    clock.advance(299)
    assert await cache.get(_key(), eps.snapshot_token) is eps

    clock.advance(2)
    assert await cache.get(_key(), eps.snapshot_token) is None


# ── LRU eviction ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_lru_eviction(catalog, clock):
    cache = DecisionCache(max_entries=2, ttl_seconds=300.0, clock=clock)
    a, b, c = (_eps(catalog, principal=p) for p in ("a", "b", "c"))

    await cache.put(_key("a"), a)
    await cache.put(_key("b"), b)
    # touch "a" so "b" becomes least recently used
    assert await cache.get(_key("a"), a.snapshot_token) is a
    await cache.put(_key("c"), c)

    assert len(cache) == 2
    assert await cache.get(_key("b"), b.snapshot_token) is None
    assert await cache.get(_key("a"), a.snapshot_token) is a
    assert cache.stats().evictions == 1


def test_rejects_non_positive_size():
    with pytest.raises(ValueError):
        DecisionCache(max_entries=0)


# ── Invalidation ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_invalidate_tenant_removes_all_contexts_of_that_tenant(cache, catalog):
    tenant_only = _eps(catalog)
    in_project = _eps(catalog, project="project-a1")
    other_tenant = _eps(catalog, tenant="tenant-b")
    await cache.put(_key(), tenant_only)
    await cache.put(_key(project="project-a1"), in_project)
    await cache.put(_key(tenant="tenant-b"), other_tenant)

    removed = await cache.invalidate_tenant("bob", "tenant-a")

    assert removed == 2
    assert await cache.get(_key(tenant="tenant-b"), other_tenant.snapshot_token) is other_tenant


@pytest.mark.asyncio
async def test_invalidate_project_only_touches_that_project(cache, catalog):
    a1 = _eps(catalog, project="project-a1")
    a2 = _eps(catalog, project="project-a2")
    await cache.put(_key(project="project-a1"), a1)
    await cache.put(_key(project="project-a2"), a2)

    assert await cache.invalidate_project("bob", "project-a1") == 1
    assert await cache.get(_key(project="project-a2"), a2.snapshot_token) is a2


@pytest.mark.asyncio
async def test_invalidate_principal(cache, catalog):
    await cache.put(_key(), _eps(catalog))
    await cache.put(_key(tenant="tenant-b"), _eps(catalog, tenant="tenant-b"))
    alice = _eps(catalog, principal="alice")
    await cache.put(_key("alice"), alice)

    assert await cache.invalidate_principal("bob") == 2
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_put_after_invalidation_is_discarded(cache, catalog):
    generation = cache.generation("bob", "tenant-a")
    await cache.invalidate_tenant("bob", "tenant-a")

    stored = await cache.put(_key(), _eps(catalog), generation=generation)

    assert stored is False
    assert len(cache) == 0
    assert cache.stats().discarded_puts == 1


@pytest.mark.asyncio
async def test_clear_invalidates_outstanding_generations(cache, catalog):
    generation = cache.generation("bob", "tenant-a", "project-a1")
    await cache.clear()

    assert await cache.put(_key(project="project-a1"), _eps(catalog), generation=generation) is False


@pytest.mark.asyncio
async def test_clear_forgets_generation_counters(cache):
    for n in range(50):
        await cache.invalidate_tenant("bob", f"tenant-{n}")
    assert cache.stats().generations == 50

    await cache.clear()

    assert cache.stats().generations == 0


@pytest.mark.asyncio
async def test_generation_counters_are_bounded(catalog, clock):
    cache = DecisionCache(max_entries=3, ttl_seconds=300.0, clock=clock)
    generation = cache.generation("bob", "tenant-a")
    await cache.invalidate_tenant("bob", "tenant-a")

    for n in range(10):
        await cache.invalidate_tenant("erin", f"tenant-{n}")

    assert cache.stats().generations == 3
    # The forgotten counter must not let an older resolution through
    assert await cache.put(_key(), _eps(catalog), generation=generation) is False


@pytest.mark.asyncio
async def test_concurrent_readers_and_writers(cache, catalog):
    eps = _eps(catalog)

    async def writer():
        for _ in range(50):
            await cache.put(_key(), eps)
            await asyncio.sleep(0)

    async def reader():
        seen = []
        for _ in range(50):
            value = await cache.get(_key(), eps.snapshot_token)
            seen.append(value)
            await asyncio.sleep(0)
        return seen

    results = await asyncio.gather(writer(), reader(), reader())

    for seen in results[1:]:
        assert all(value is None or value is eps for value in seen)


# ── Shared tier ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_shared_tier_hit_is_validated_and_promoted(catalog, clock):
    eps = _eps(catalog)
    shared = AsyncMock()
    shared.fetch.return_value = eps.to_dict()
    cache = DecisionCache(max_entries=10, ttl_seconds=60, shared=shared, clock=clock)

    value = await cache.get(_key(), eps.snapshot_token)

    assert value == eps
    assert len(cache) == 1
    assert cache.stats().shared_hits == 1
    shared.fetch.assert_awaited_once_with(_key().as_string())


@pytest.mark.asyncio
async def test_shared_tier_entry_with_old_snapshot_is_ignored(catalog, clock):
    shared = AsyncMock()
    shared.fetch.return_value = _eps(catalog, tenant_role="viewer").to_dict()
    cache = DecisionCache(max_entries=10, ttl_seconds=60, shared=shared, clock=clock)

    fresh_token = RoleSnapshot("user", "admin", None).token
    assert await cache.get(_key(), fresh_token) is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_shared_tier_write_and_invalidate(catalog, clock):
    shared = AsyncMock()
    cache = DecisionCache(max_entries=10, ttl_seconds=60, shared=shared, clock=clock)
    eps = _eps(catalog)

    await cache.put(_key(), eps)
    await cache.invalidate_tenant("bob", "tenant-a")

    shared.store.assert_awaited_once_with(_key().as_string(), eps.to_dict(), ttl_seconds=60)
    shared.evict.assert_awaited_once_with("eps", "bob", "tenant-a")


class SharedDict:
    """Dict-backed stand-in for the Redis tier shared by several caches"""

    def __init__(self):
        self.data = {}

    async def fetch(self, key):
        return self.data.get(key)

    async def store(self, key, payload, ttl_seconds):
        self.data[key] = payload
        return True

    async def evict(self, *segments):
        return 0

    async def close(self):
        pass


def test_key_segments_are_encoded():
    assert _key().as_string() == "eps:bob:tenant-a::v1"
    assert _key(project="-").as_string() == "eps:bob:tenant-a:-:v1"
    assert CacheKey("a:b", "c", None, 1).as_string() != CacheKey("a", "b:c", None, 1).as_string()


@pytest.mark.asyncio
async def test_shared_entry_is_not_served_across_principals(catalog, clock):
    shared = SharedDict()
    writer = DecisionCache(max_entries=10, ttl_seconds=60, shared=shared, clock=clock)
    reader = DecisionCache(max_entries=10, ttl_seconds=60, shared=shared, clock=clock)
    eps = _eps(catalog, principal="a:b", tenant="c")

    await writer.put(CacheKey("a:b", "c", None, 1), eps)

    assert await reader.get(CacheKey("a", "b:c", None, 1), eps.snapshot_token) is None
    assert await reader.get(CacheKey("a:b", "c", None, 1), eps.snapshot_token) == eps


@pytest.mark.asyncio
async def test_shared_entry_for_other_context_is_rejected(catalog, clock):
    shared = AsyncMock()
    shared.fetch.return_value = _eps(catalog, principal="carol").to_dict()
    cache = DecisionCache(max_entries=10, ttl_seconds=60, shared=shared, clock=clock)
    token = RoleSnapshot("user", "viewer", None).token

    assert await cache.get(_key(), token) is None
    assert len(cache) == 0
    assert cache.stats().shared_hits == 0
