"""
Shared fixtures for the authorization engine test suite.

World used across tests:

    tenant-a  owns project-a1, project-a2
    tenant-b  owns project-b1

    root   global super_admin, no memberships
    alice  global user, tenant-a admin
    bob    global user, tenant-a viewer, project-a1 contributor
    carol  global user, no tenant role in tenant-b, project-b1 owner (dangling)
    dave   global admin, tenant-a editor
"""

import pytest
import pytest_asyncio

from tenant_rbac.core.permission_resolver import AssignmentPermissionResolver
from tenant_rbac.core.rbac import RoleCatalog
from tenant_rbac.repositories.assignment import InMemoryAssignmentStore
from tenant_rbac.services.authorization import AuthorizationGate
from tenant_rbac.services.decision_cache import DecisionCache


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def catalog():
    return RoleCatalog()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def store():
    store = InMemoryAssignmentStore()
    await store.register_project("project-a1", "tenant-a")
    await store.register_project("project-a2", "tenant-a")
    await store.register_project("project-b1", "tenant-b")

    await store.set_global_role("root", "super_admin")

    await store.set_global_role("alice", "user")
    await store.set_tenant_role("alice", "tenant-a", "admin")

    await store.set_global_role("bob", "user")
    await store.set_tenant_role("bob", "tenant-a", "viewer")
    await store.set_project_role("bob", "project-a1", "contributor")

    await store.set_global_role("carol", "user")
    await store.set_tenant_role("carol", "tenant-a", "viewer")
    await store.set_project_role("carol", "project-b1", "owner")

    await store.set_global_role("dave", "admin")
    await store.set_tenant_role("dave", "tenant-a", "editor")
    return store


@pytest.fixture
def cache(clock):
    return DecisionCache(max_entries=100, ttl_seconds=300.0, clock=clock)


@pytest.fixture
def resolver(store, catalog):
    return AssignmentPermissionResolver(store, catalog)


@pytest.fixture
def gate(catalog, resolver, cache):
    return AuthorizationGate(catalog=catalog, resolver=resolver, cache=cache)
