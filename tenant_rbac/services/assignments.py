"""
Assignment Service
Administrative role assignment path; every mutation drives cache invalidation
"""

from typing import Optional

import structlog

from tenant_rbac.core.exceptions import PermissionDenied, UnknownRole
from tenant_rbac.core.rbac import GlobalRole, ProjectRole, RoleLayer, RoleSnapshot
from tenant_rbac.repositories.assignment import WritableAssignmentStore
from tenant_rbac.services.authorization import (
    AssignmentScope,
    AuthorizationGate,
    Decision,
    DecisionCode,
)

logger = structlog.get_logger()

GLOBAL_ROLE_ADMIN_PERMISSION = "user:manage_permissions"
TENANT_ROLE_ADMIN_PERMISSION = "tenant:manage_members"
PROJECT_ROLE_ADMIN_PERMISSION = "project:manage"
PROJECT_ROLE_ADMINS = frozenset({ProjectRole.OWNER.value, ProjectRole.MAINTAINER.value})


class AssignmentService:
    """
    Business logic for role assignment changes

    Each operation validates the role against the catalog, authorizes the
    acting principal, writes through the store and then notifies the gate.
    """

    def __init__(self, store: WritableAssignmentStore, gate: AuthorizationGate):
        self.store = store
        self.gate = gate

    # ── global roles ────────────────────────────────────────────

    async def set_global_role(self, actor: str, principal: str, role: str) -> None:
        role = self._validate(RoleLayer.GLOBAL, role)
        await self._authorize_global(actor, role)
        try:
            await self.store.set_global_role(principal, role, assigned_by=actor)
        finally:
            await self.gate.assignment_changed(principal, AssignmentScope.global_())
        logger.info("Global role assigned", actor=actor, principal=principal, role=role)

    async def clear_global_role(self, actor: str, principal: str) -> bool:
        await self._authorize_global(actor, None)
        try:
            removed = await self.store.clear_global_role(principal)
        finally:
            await self.gate.assignment_changed(principal, AssignmentScope.global_())
        logger.info("Global role cleared", actor=actor, principal=principal, removed=removed)
        return removed

    # ── tenant roles ────────────────────────────────────────────

    async def set_tenant_role(self, actor: str, tenant: str, principal: str, role: str) -> None:
        role = self._validate(RoleLayer.TENANT, role)
        await self.gate.enforce(actor, tenant, None, TENANT_ROLE_ADMIN_PERMISSION)
        try:
            await self.store.set_tenant_role(principal, tenant, role, assigned_by=actor)
        finally:
            await self.gate.assignment_changed(principal, AssignmentScope.tenant(tenant))
        logger.info("Tenant role assigned", actor=actor, principal=principal, tenant=tenant, role=role)

    async def remove_tenant_role(self, actor: str, tenant: str, principal: str) -> bool:
        await self.gate.enforce(actor, tenant, None, TENANT_ROLE_ADMIN_PERMISSION)
        try:
            removed = await self.store.remove_tenant_role(principal, tenant)
        finally:
            await self.gate.assignment_changed(principal, AssignmentScope.tenant(tenant))
        logger.info("Tenant role removed", actor=actor, principal=principal, tenant=tenant, removed=removed)
        return removed

    # ── project roles ───────────────────────────────────────────

    async def set_project_role(self, actor: str, project: str, principal: str, role: str) -> None:
        role = self._validate(RoleLayer.PROJECT, role)
        await self._authorize_project(actor, project)
        try:
            await self.store.set_project_role(principal, project, role, assigned_by=actor)
        finally:
            await self.gate.assignment_changed(principal, AssignmentScope.project(project))
        logger.info("Project role assigned", actor=actor, principal=principal, project=project, role=role)

    async def remove_project_role(self, actor: str, project: str, principal: str) -> bool:
        await self._authorize_project(actor, project)
        try:
            removed = await self.store.remove_project_role(principal, project)
        finally:
            await self.gate.assignment_changed(principal, AssignmentScope.project(project))
        logger.info("Project role removed", actor=actor, principal=principal, project=project, removed=removed)
        return removed

    # ── internals ───────────────────────────────────────────────

    def _validate(self, layer: RoleLayer, role) -> str:
        """Raises ``UnknownRole`` for names the catalog does not define."""
        role = str(getattr(role, "value", role))
        self.gate.catalog.permissions_for(layer, role)
        return role

    async def _authorize_project(self, actor: str, project: str) -> None:
        """
        ``project:manage`` or holding owner/maintainer in the project itself.
        The role path only opens on a plain not-granted deny, so tenant
        isolation and project lookup failures still refuse.
        """
        decision = await self.gate.require(actor, None, project, PROJECT_ROLE_ADMIN_PERMISSION)
        if decision.allowed:
            return
        if decision.code == DecisionCode.NOT_GRANTED and decision.roles.project_role in PROJECT_ROLE_ADMINS:
            logger.info(
                "Project role change allowed by project role",
                actor=actor,
                project=project,
                actor_role=decision.roles.project_role,
            )
            return
        raise PermissionDenied(decision)

    async def _authorize_global(self, actor: str, role: Optional[str]) -> None:
        """
        Global roles are tenant-independent, so only the actor's own global
        role counts. Granting super_admin requires being super_admin.
        """
        actor_role = await self.store.global_role_of(actor)
        granted = frozenset()
        if actor_role is not None:
            try:
                granted = self.gate.catalog.permissions_for(RoleLayer.GLOBAL, actor_role)
            except UnknownRole:
                logger.error("Actor holds a global role missing from the catalog", actor=actor, role=actor_role)

        allowed = GLOBAL_ROLE_ADMIN_PERMISSION in granted
        if role == GlobalRole.SUPER_ADMIN.value and actor_role != GlobalRole.SUPER_ADMIN.value:
            allowed = False
        if allowed:
            return

        decision = Decision(
            allowed=False,
            code=DecisionCode.NOT_GRANTED,
            reason=f"global role '{actor_role}' may not assign global role '{role}'",
            principal=actor,
            tenant=None,
            project=None,
            permissions=(GLOBAL_ROLE_ADMIN_PERMISSION,),
            roles=RoleSnapshot(global_role=actor_role),
            catalog_version=self.gate.catalog.current_version(),
        )
        logger.warning("Global role change denied", actor=actor, actor_role=actor_role, role=role)
        raise PermissionDenied(decision)
