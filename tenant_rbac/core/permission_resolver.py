"""
Effective permission resolution.

Combines the global, tenant and project role layers of one principal into
the permission set that principal holds in a (tenant, project?) context.
Layers are purely additive. The only restriction besides the absence of a
grant is tenant isolation: without a tenant role (and short of
``super_admin``) nothing held in that tenant counts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import structlog

from tenant_rbac.core.exceptions import TenantMismatch, UnknownRole
from tenant_rbac.core.rbac import (
    LAYER_RANK,
    PROJECT_SCOPED_RESOURCES,
    CatalogSnapshot,
    GlobalRole,
    RoleCatalog,
    RoleLayer,
    RoleSnapshot,
    resource_of,
)
from tenant_rbac.repositories.assignment import AssignmentStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class EffectivePermissionSet:
    """Resolved permissions for one (principal, tenant, project?) context."""
    principal: str
    tenant: str
    project: Optional[str]
    permissions: frozenset[str]
    contributions: Mapping[RoleLayer, frozenset[str]]
    roles: RoleSnapshot
    catalog_version: int
    isolated: bool = False
    super_admin: bool = False
    unknown_roles: tuple[tuple[RoleLayer, str], ...] = field(default_factory=tuple)

    @property
    def snapshot_token(self) -> str:
        return self.roles.token

    def has(self, permission: str) -> bool:
        return permission in self.permissions

    def layers_granting(self, permission: str) -> tuple[RoleLayer, ...]:
        """Contributing layers, broadest first."""
        return tuple(
            layer for layer in LAYER_RANK
            if permission in self.contributions.get(layer, frozenset())
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "principal": self.principal,
            "tenant": self.tenant,
            "project": self.project,
            "permissions": sorted(self.permissions),
            "contributions": {
                layer.value: sorted(perms) for layer, perms in self.contributions.items()
            },
            "roles": self.roles.as_dict(),
            "catalog_version": self.catalog_version,
            "isolated": self.isolated,
            "super_admin": self.super_admin,
            "unknown_roles": [[layer.value, role] for layer, role in self.unknown_roles],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EffectivePermissionSet":
        return cls(
            principal=data["principal"],
            tenant=data["tenant"],
            project=data.get("project"),
            permissions=frozenset(data["permissions"]),
            contributions={
                RoleLayer(layer): frozenset(perms)
                for layer, perms in data.get("contributions", {}).items()
            },
            roles=RoleSnapshot(**data["roles"]),
            catalog_version=int(data["catalog_version"]),
            isolated=bool(data.get("isolated", False)),
            super_admin=bool(data.get("super_admin", False)),
            unknown_roles=tuple(
                (RoleLayer(layer), role) for layer, role in data.get("unknown_roles", [])
            ),
        )


def combine_layers(
    catalog: CatalogSnapshot,
    roles: RoleSnapshot,
    *,
    principal: str,
    tenant: str,
    project: Optional[str] = None,
) -> EffectivePermissionSet:
    """
    Pure merge of the three role layers against one catalog snapshot.

    ``UnknownRole`` for a layer is logged and that layer contributes nothing;
    the remaining layers are still applied.
    """
    def result(contributions, *, isolated=False, super_admin=False, unknown=()):
        permissions = frozenset().union(*contributions.values())
        return EffectivePermissionSet(
            principal=principal,
            tenant=tenant,
            project=project,
            permissions=permissions,
            contributions=contributions,
            roles=roles,
            catalog_version=catalog.version,
            isolated=isolated,
            super_admin=super_admin,
            unknown_roles=tuple(unknown),
        )

    is_super_admin = roles.global_role == GlobalRole.SUPER_ADMIN.value

    # Tenant isolation: a project grant never substitutes for tenant membership
    if roles.tenant_role is None and not is_super_admin:
        return result({}, isolated=True)

    if is_super_admin:
        return result({RoleLayer.GLOBAL: catalog.vocabulary}, super_admin=True)

    contributions: dict[RoleLayer, frozenset[str]] = {}
    unknown: list[tuple[RoleLayer, str]] = []

    for layer in LAYER_RANK:
        role_name = roles.role_for(layer)
        if role_name is None or (layer == RoleLayer.PROJECT and project is None):
            continue
        try:
            granted = catalog.permissions_for(layer, role_name)
        except UnknownRole as e:
            logger.error(
                "Role not defined in catalog, layer contributes no permissions",
                layer=e.layer,
                role=e.role,
                principal=principal,
                tenant=tenant,
                project=project,
                catalog_version=catalog.version,
            )
            unknown.append((layer, role_name))
            continue
        if layer == RoleLayer.PROJECT:
            granted = frozenset(p for p in granted if resource_of(p) in PROJECT_SCOPED_RESOURCES)
        contributions[layer] = granted

    return result(contributions, unknown=unknown)


class PermissionResolver(ABC):
    @abstractmethod
    async def resolve_tenant(self, tenant: Optional[str], project: Optional[str]) -> str:
        raise NotImplementedError

    @abstractmethod
    async def read_roles(self, principal: str, tenant: str, project: Optional[str]) -> RoleSnapshot:
        raise NotImplementedError

    @abstractmethod
    async def resolve(
        self,
        principal: str,
        tenant: Optional[str] = None,
        project: Optional[str] = None,
    ) -> EffectivePermissionSet:
        raise NotImplementedError


class AssignmentPermissionResolver(PermissionResolver):
    """Resolver backed by an assignment store and a role catalog"""

    def __init__(self, store: AssignmentStore, catalog: RoleCatalog):
        self.store = store
        self.catalog = catalog

    async def resolve_tenant(self, tenant: Optional[str], project: Optional[str]) -> str:
        """
        Tenant that scopes the context.

        Raises ``ProjectNotFound`` for an unknown project and ``TenantMismatch``
        when an explicit tenant does not own the project.
        """
        if project is None:
            if tenant is None:
                raise ValueError("Either a tenant or a project is required")
            return tenant

        owner = await self.store.tenant_of_project(project)
        if tenant is not None and tenant != owner:
            raise TenantMismatch(project=project, tenant=tenant, owner=owner)
        return owner

    async def read_roles(self, principal: str, tenant: str, project: Optional[str]) -> RoleSnapshot:
        return await self.store.role_snapshot(principal, tenant, project)

    async def resolve(
        self,
        principal: str,
        tenant: Optional[str] = None,
        project: Optional[str] = None,
    ) -> EffectivePermissionSet:
        resolved_tenant = await self.resolve_tenant(tenant, project)
        roles = await self.read_roles(principal, resolved_tenant, project)
        return self.combine(principal, resolved_tenant, project, roles)

    def combine(
        self,
        principal: str,
        tenant: str,
        project: Optional[str],
        roles: RoleSnapshot,
        catalog: Optional[CatalogSnapshot] = None,
    ) -> EffectivePermissionSet:
        return combine_layers(
            catalog or self.catalog.snapshot(),
            roles,
            principal=principal,
            tenant=tenant,
            project=project,
        )
