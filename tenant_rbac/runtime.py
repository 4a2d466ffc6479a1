"""
Authorization Runtime
Constructs the catalog, store, cache and gate at start and tears them down at shutdown
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from tenant_rbac.core.cache import RedisPermissionTier
from tenant_rbac.core.config import Settings
from tenant_rbac.core.database import close_database, create_engine, create_session_factory, init_database
from tenant_rbac.core.permission_resolver import AssignmentPermissionResolver
from tenant_rbac.core.rbac import RoleCatalog
from tenant_rbac.repositories.assignment import (
    AssignmentStore,
    InMemoryAssignmentStore,
    SQLAssignmentStore,
    WritableAssignmentStore,
)
from tenant_rbac.services.assignments import AssignmentService
from tenant_rbac.services.authorization import AuthorizationGate
from tenant_rbac.services.decision_cache import DecisionCache

logger = structlog.get_logger()


@dataclass
class AuthorizationRuntime:
    """Long-lived collaborators of one process"""
    settings: Settings
    catalog: RoleCatalog
    store: AssignmentStore
    gate: AuthorizationGate
    cache: Optional[DecisionCache] = None
    assignments: Optional[AssignmentService] = None
    engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        await self.store.close()
        if self.engine is not None:
            await close_database(self.engine)
        logger.info("Authorization runtime closed")


def load_catalog(settings: Settings) -> RoleCatalog:
    if settings.RBAC_CATALOG_PATH:
        return RoleCatalog.from_file(settings.RBAC_CATALOG_PATH)
    return RoleCatalog()


async def create_runtime(
    settings: Optional[Settings] = None,
    *,
    store: Optional[AssignmentStore] = None,
    catalog: Optional[RoleCatalog] = None,
    init_schema: bool = False,
) -> AuthorizationRuntime:
    """
    Build the runtime from settings

    Args:
        settings: Engine settings; read from the environment when omitted
        store: Pre-built assignment store; overrides DATABASE_URL
        catalog: Pre-built catalog; overrides RBAC_CATALOG_PATH
        init_schema: Create assignment tables (tests and local runs)

    Returns:
        Ready runtime; call ``close()`` at shutdown
    """
    settings = settings or Settings()
    catalog = catalog or load_catalog(settings)

    engine = None
    if store is None:
        if settings.DATABASE_URL:
            engine = create_engine(settings)
            if init_schema:
                await init_database(engine)
            store = SQLAssignmentStore(create_session_factory(engine))
        else:
            logger.warning("DATABASE_URL not set, using in-memory assignment store")
            store = InMemoryAssignmentStore()

    cache = None
    if settings.RBAC_CACHE_ENABLED:
        shared = RedisPermissionTier(settings.REDIS_URL) if settings.REDIS_URL else None
        cache = DecisionCache(
            max_entries=settings.RBAC_CACHE_MAX_ENTRIES,
            ttl_seconds=settings.RBAC_CACHE_TTL_SECONDS,
            shared=shared,
        )

    gate = AuthorizationGate(
        catalog=catalog,
        resolver=AssignmentPermissionResolver(store, catalog),
        cache=cache,
        store_timeout=settings.RBAC_STORE_TIMEOUT_SECONDS,
    )
    assignments = AssignmentService(store, gate) if isinstance(store, WritableAssignmentStore) else None

    logger.info(
        "Authorization runtime started",
        catalog_version=catalog.current_version(),
        store=type(store).__name__,
        cache_enabled=cache is not None,
        shared_cache=bool(settings.REDIS_URL),
    )
    return AuthorizationRuntime(
        settings=settings,
        catalog=catalog,
        store=store,
        gate=gate,
        cache=cache,
        assignments=assignments,
        engine=engine,
    )
