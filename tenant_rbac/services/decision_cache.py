"""
Decision Cache
Bounded LRU of resolved permission sets with TTL, snapshot validation and
generation-guarded invalidation.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import quote

import structlog

from tenant_rbac.core.cache import RedisPermissionTier
from tenant_rbac.core.exceptions import CacheStale
from tenant_rbac.core.permission_resolver import EffectivePermissionSet

logger = structlog.get_logger()


def key_segment(value: Optional[str]) -> str:
    """Percent-encode an id so it cannot span ``:`` separators; None encodes as empty"""
    return quote(value, safe="") if value else ""


@dataclass(frozen=True)
class CacheKey:
    principal: str
    tenant: str
    project: Optional[str]
    catalog_version: int

    def as_string(self) -> str:
        return ":".join((
            "eps",
            key_segment(self.principal),
            key_segment(self.tenant),
            key_segment(self.project),
            f"v{self.catalog_version}",
        ))


@dataclass(frozen=True)
class _CacheEntry:
    value: EffectivePermissionSet
    stored_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    stale: int = 0
    evictions: int = 0
    discarded_puts: int = 0
    shared_hits: int = 0
    size: int = 0
    generations: int = 0


class DecisionCache:
    """
    Memoizes effective permission sets per (principal, tenant, project, catalog version).

    A hit is only served when the entry was computed from the same catalog
    version and the same role snapshot the caller just observed, and when it
    is younger than ``ttl_seconds``. Invalidation bumps a generation counter
    so a resolution that started before the invalidation cannot be stored
    after it. At most ``max_entries`` counters are tracked; dropping the
    oldest one advances the epoch, which voids every outstanding put.
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        ttl_seconds: float = 300.0,
        shared: Optional[RedisPermissionTier] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._ttl_seconds = ttl_seconds
        self._shared = shared
        self._clock = clock

        self._entries: OrderedDict[CacheKey, _CacheEntry] = OrderedDict()
        self._generations: OrderedDict[tuple[str, ...], int] = OrderedDict()
        self._epoch = 0
        self._stats = CacheStats()
        self._lock = asyncio.Lock()

    # ── public API ──────────────────────────────────────────────

    def generation(self, principal: str, tenant: str, project: Optional[str] = None) -> tuple[int, ...]:
        """Invalidation generation covering one context; pass it back to ``put``."""
        return (
            self._epoch,
            self._generations.get(("principal", principal), 0),
            self._generations.get(("tenant", principal, tenant), 0),
            self._generations.get(("project", principal, project), 0) if project else 0,
        )

    async def get(self, key: CacheKey, snapshot_token: str) -> Optional[EffectivePermissionSet]:
        """Return a valid cached set or None; stale entries are evicted."""
        generation = self.generation(key.principal, key.tenant, key.project)

        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                try:
                    self._validate(entry, key, snapshot_token)
                except CacheStale as e:
                    del self._entries[key]
                    self._stats.stale += 1
                    logger.debug("Cached permission set discarded", reason=str(e), key=key.as_string())
                else:
                    self._entries.move_to_end(key)
                    self._stats.hits += 1
                    return entry.value

        if self._shared is not None:
            value = await self._get_shared(key, snapshot_token)
            if value is not None:
                async with self._lock:
                    self._stats.shared_hits += 1
                    if generation == self.generation(key.principal, key.tenant, key.project):
                        self._store(key, value)
                return value

        async with self._lock:
            self._stats.misses += 1
        return None

    async def put(
        self,
        key: CacheKey,
        value: EffectivePermissionSet,
        generation: Optional[tuple[int, ...]] = None,
    ) -> bool:
        """
        Store a resolved set. Returns False when the put was discarded because
        an invalidation happened after ``generation`` was taken.
        """
        async with self._lock:
            current = self.generation(key.principal, key.tenant, key.project)
            if generation is not None and generation != current:
                self._stats.discarded_puts += 1
                logger.debug("Discarding permission set resolved before invalidation", key=key.as_string())
                return False
            self._store(key, value)

        if self._shared is not None:
            await self._shared.store(key.as_string(), value.to_dict(), ttl_seconds=self._ttl_seconds)
        return True

    async def invalidate_tenant(self, principal: str, tenant: str) -> int:
        async with self._lock:
            self._bump(("tenant", principal, tenant))
            removed = self._remove(lambda k: k.principal == principal and k.tenant == tenant)
        if self._shared is not None:
            await self._shared.evict("eps", key_segment(principal), key_segment(tenant))
        logger.debug("Invalidated tenant permission sets", principal=principal, tenant=tenant, removed=removed)
        return removed

    async def invalidate_project(self, principal: str, project: str) -> int:
        async with self._lock:
            self._bump(("project", principal, project))
            removed = self._remove(lambda k: k.principal == principal and k.project == project)
        if self._shared is not None:
            await self._shared.evict("eps", key_segment(principal), None, key_segment(project))
        logger.debug("Invalidated project permission sets", principal=principal, project=project, removed=removed)
        return removed

    async def invalidate_principal(self, principal: str) -> int:
        async with self._lock:
            self._bump(("principal", principal))
            removed = self._remove(lambda k: k.principal == principal)
        if self._shared is not None:
            await self._shared.evict("eps", key_segment(principal))
        logger.debug("Invalidated principal permission sets", principal=principal, removed=removed)
        return removed

    async def clear(self) -> None:
        async with self._lock:
            self._epoch += 1
            self._generations.clear()
            self._entries.clear()
        if self._shared is not None:
            await self._shared.evict("eps")
        logger.info("Decision cache cleared")

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            stale=self._stats.stale,
            evictions=self._stats.evictions,
            discarded_puts=self._stats.discarded_puts,
            shared_hits=self._stats.shared_hits,
            size=len(self._entries),
            generations=len(self._generations),
        )

    def __len__(self) -> int:
        return len(self._entries)

    async def close(self) -> None:
        async with self._lock:
            self._entries.clear()
        if self._shared is not None:
            await self._shared.close()

    # ── internals ───────────────────────────────────────────────

    def _validate(self, entry: _CacheEntry, key: CacheKey, snapshot_token: str) -> None:
        value = entry.value
        if value.catalog_version != key.catalog_version:
            raise CacheStale("catalog version changed")
        if value.snapshot_token != snapshot_token:
            raise CacheStale("role snapshot changed")
        if self._clock() - entry.stored_at >= self._ttl_seconds:
            raise CacheStale("entry expired")

    async def _get_shared(self, key: CacheKey, snapshot_token: str) -> Optional[EffectivePermissionSet]:
        raw = await self._shared.fetch(key.as_string())
        if raw is None:
            return None
        try:
            value = EffectivePermissionSet.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Malformed shared cache entry ignored", key=key.as_string(), error=str(e))
            return None
        if (value.principal, value.tenant, value.project) != (key.principal, key.tenant, key.project):
            logger.warning(
                "Shared cache entry belongs to another context",
                key=key.as_string(),
                principal=value.principal,
                tenant=value.tenant,
                project=value.project,
            )
            return None
        if value.catalog_version != key.catalog_version or value.snapshot_token != snapshot_token:
            return None
        return value

    def _store(self, key: CacheKey, value: EffectivePermissionSet) -> None:
        self._entries[key] = _CacheEntry(value=value, stored_at=self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            self._stats.evictions += 1

    def _bump(self, generation_key: tuple[str, ...]) -> None:
        self._generations[generation_key] = self._generations.get(generation_key, 0) + 1
        self._generations.move_to_end(generation_key)
        while len(self._generations) > self._max_entries:
            self._generations.popitem(last=False)
            self._epoch += 1

    def _remove(self, predicate: Callable[[CacheKey], bool]) -> int:
        doomed = [key for key in self._entries if predicate(key)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)
