"""
Tests for effective permission resolution
Layer merging, tenant isolation, unknown roles and tenant resolution
"""

import itertools
from unittest.mock import AsyncMock

import pytest

from tenant_rbac.core.exceptions import ProjectNotFound, StoreUnavailable, TenantMismatch
from tenant_rbac.core.permission_resolver import AssignmentPermissionResolver, combine_layers
from tenant_rbac.core.rbac import (
    ALL_PERMISSIONS,
    GlobalRole,
    ProjectRole,
    RoleLayer,
    RoleSnapshot,
    TenantRole,
)
from tenant_rbac.repositories.assignment import InMemoryAssignmentStore


def _combine(catalog, global_role=None, tenant_role=None, project_role=None, project="project-a1"):
    return combine_layers(
        catalog.snapshot(),
        RoleSnapshot(global_role, tenant_role, project_role),
        principal="p",
        tenant="tenant-a",
        project=project,
    )


class TestCombineLayers:
    """Tests for the pure layer merge"""

    def test_union_of_all_layers(self, catalog):
        eps = _combine(catalog, "admin", "editor", "owner")

        expected = (
            catalog.permissions_for(RoleLayer.GLOBAL, "admin")
            | catalog.permissions_for(RoleLayer.TENANT, "editor")
            | catalog.permissions_for(RoleLayer.PROJECT, "owner")
        )
        assert eps.permissions == expected
        assert set(eps.contributions) == {RoleLayer.GLOBAL, RoleLayer.TENANT, RoleLayer.PROJECT}
        assert eps.catalog_version == 1
        assert not eps.isolated

    def test_project_layer_ignored_without_project_context(self, catalog):
        eps = _combine(catalog, "user", "viewer", "owner", project=None)

        assert RoleLayer.PROJECT not in eps.contributions
        assert "project:delete" not in eps.permissions

    def test_isolation_without_tenant_role(self, catalog):
        eps = _combine(catalog, "user", None, "owner")

        assert eps.isolated is True
        assert eps.permissions == frozenset()
        assert eps.contributions == {}

    def test_global_admin_is_isolated_without_tenant_role(self, catalog):
        eps = _combine(catalog, "admin", None, None)

        assert eps.isolated is True
        assert eps.permissions == frozenset()

    def test_super_admin_short_circuits(self, catalog):
        eps = _combine(catalog, "super_admin", None, None)

        assert eps.super_admin is True
        assert eps.permissions == ALL_PERMISSIONS
        assert eps.layers_granting("project:delete") == (RoleLayer.GLOBAL,)

    def test_broader_grant_not_narrowed_by_narrower_role(self, catalog):
        eps = _combine(catalog, "user", "owner", "viewer")

        assert "project:delete" in eps.permissions
        assert eps.layers_granting("project:delete") == (RoleLayer.TENANT,)
        assert eps.layers_granting("report:read") == (RoleLayer.TENANT, RoleLayer.PROJECT)

    def test_unknown_project_role_keeps_tenant_access(self, catalog):
        eps = _combine(catalog, "user", "viewer", "legacy_lead")

        assert eps.permissions == catalog.permissions_for(RoleLayer.TENANT, "viewer") | \
            catalog.permissions_for(RoleLayer.GLOBAL, "user")
        assert eps.unknown_roles == ((RoleLayer.PROJECT, "legacy_lead"),)

    def test_unknown_global_role_contributes_nothing(self, catalog):
        eps = _combine(catalog, "root", "viewer", None)

        assert eps.permissions == catalog.permissions_for(RoleLayer.TENANT, "viewer")
        assert eps.unknown_roles == ((RoleLayer.GLOBAL, "root"),)

    def test_snapshot_token_matches_roles(self, catalog):
        eps = _combine(catalog, "user", "viewer", None)

        assert eps.snapshot_token == RoleSnapshot("user", "viewer", None).token

    def test_removing_any_role_never_grows_the_set(self, catalog):
        global_roles = [None] + [r.value for r in GlobalRole]
        tenant_roles = [None] + [r.value for r in TenantRole]
        project_roles = [None] + [r.value for r in ProjectRole]

        for g, t, p in itertools.product(global_roles, tenant_roles, project_roles):
            full = _combine(catalog, g, t, p).permissions
            assert _combine(catalog, None, t, p).permissions <= full
            assert _combine(catalog, g, None, p).permissions <= full
            assert _combine(catalog, g, t, None).permissions <= full

    def test_union_property_over_all_members(self, catalog):
        for t, p in itertools.product(TenantRole, ProjectRole):
            eps = _combine(catalog, "user", t.value, p.value)
            union = frozenset().union(*eps.contributions.values())
            assert eps.permissions == union


class TestAssignmentPermissionResolver:
    """Tests for resolution against an assignment store"""

    @pytest.mark.asyncio
    async def test_resolves_tenant_from_project(self, resolver):
        eps = await resolver.resolve("bob", project="project-a1")

        assert eps.tenant == "tenant-a"
        assert eps.roles == RoleSnapshot("user", "viewer", "contributor")
        assert "test_case:edit" in eps.permissions

    @pytest.mark.asyncio
    async def test_explicit_tenant_without_project(self, resolver):
        eps = await resolver.resolve("alice", tenant="tenant-a")

        assert eps.project is None
        assert "tenant:manage_members" in eps.permissions

    @pytest.mark.asyncio
    async def test_dangling_project_role_in_other_tenant_is_isolated(self, resolver):
        eps = await resolver.resolve("carol", project="project-b1")

        assert eps.tenant == "tenant-b"
        assert eps.isolated is True
        assert eps.permissions == frozenset()

    @pytest.mark.asyncio
    async def test_tenant_a_membership_does_not_leak_into_tenant_b(self, resolver):
        eps = await resolver.resolve("alice", tenant="tenant-b")

        assert eps.permissions == frozenset()

    @pytest.mark.asyncio
    async def test_unknown_project(self, resolver):
        with pytest.raises(ProjectNotFound):
            await resolver.resolve("bob", project="project-zz")

    @pytest.mark.asyncio
    async def test_project_outside_explicit_tenant(self, resolver):
        with pytest.raises(TenantMismatch) as exc_info:
            await resolver.resolve("bob", tenant="tenant-b", project="project-a1")

        assert exc_info.value.owner == "tenant-a"

    @pytest.mark.asyncio
    async def test_requires_tenant_or_project(self, resolver):
        with pytest.raises(ValueError):
            await resolver.resolve("bob")

    @pytest.mark.asyncio
    async def test_store_fault_propagates(self, catalog):
        store = InMemoryAssignmentStore()
        store.role_snapshot = AsyncMock(side_effect=StoreUnavailable("db down"))
        resolver = AssignmentPermissionResolver(store, catalog)

        with pytest.raises(StoreUnavailable):
            await resolver.resolve("bob", tenant="tenant-a")
