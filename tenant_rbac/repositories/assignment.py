"""
Assignment Store Adapters
Read contract consumed by the resolver, write contract used by the admin path
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_rbac.core.exceptions import ProjectNotFound, StoreUnavailable
from tenant_rbac.core.rbac import RoleSnapshot
from tenant_rbac.models.assignment import GlobalRoleAssignment, ProjectMembership, TenantMembership
from tenant_rbac.models.tenant import Project, Tenant

logger = structlog.get_logger()

STORE_FAULTS = (SQLAlchemyError, OSError, ConnectionError)


def _role_value(role) -> str:
    return str(getattr(role, "value", role))


class AssignmentStore(ABC):
    """
    Read access to externally persisted role assignments.

    Every method may raise ``StoreUnavailable``; callers must never read that
    as "no role".
    """

    @abstractmethod
    async def global_role_of(self, principal: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    async def tenant_role_of(self, principal: str, tenant: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    async def project_role_of(self, principal: str, project: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    async def tenant_of_project(self, project: str) -> str:
        """Owning tenant of a project; raises ``ProjectNotFound``."""
        raise NotImplementedError

    async def role_snapshot(
        self,
        principal: str,
        tenant: str,
        project: Optional[str] = None,
    ) -> RoleSnapshot:
        """Roles held in one context. Stores that can do this in one round trip override it."""
        global_role = await self.global_role_of(principal)
        tenant_role = await self.tenant_role_of(principal, tenant)
        project_role = await self.project_role_of(principal, project) if project else None
        return RoleSnapshot(global_role, tenant_role, project_role)

    async def close(self) -> None:
        return None


class WritableAssignmentStore(AssignmentStore):
    """Mutation contract for the administrative assignment path"""

    @abstractmethod
    async def set_global_role(self, principal: str, role: str, assigned_by: Optional[str] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    async def clear_global_role(self, principal: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def set_tenant_role(
        self, principal: str, tenant: str, role: str, assigned_by: Optional[str] = None
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    async def remove_tenant_role(self, principal: str, tenant: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def set_project_role(
        self, principal: str, project: str, role: str, assigned_by: Optional[str] = None
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    async def remove_project_role(self, principal: str, project: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def register_project(self, project: str, tenant: str, name: str = "") -> None:
        raise NotImplementedError


class InMemoryAssignmentStore(WritableAssignmentStore):
    """Dict-backed store for tests and single-process embedding"""

    def __init__(self):
        self._global: dict[str, str] = {}
        self._tenant: dict[tuple[str, str], str] = {}
        self._project: dict[tuple[str, str], str] = {}
        self._project_tenant: dict[str, str] = {}

    async def global_role_of(self, principal: str) -> Optional[str]:
        return self._global.get(principal)

    async def tenant_role_of(self, principal: str, tenant: str) -> Optional[str]:
        return self._tenant.get((principal, tenant))

    async def project_role_of(self, principal: str, project: str) -> Optional[str]:
        return self._project.get((principal, project))

    async def tenant_of_project(self, project: str) -> str:
        try:
            return self._project_tenant[project]
        except KeyError:
            raise ProjectNotFound(project) from None

    async def set_global_role(self, principal: str, role: str, assigned_by: Optional[str] = None) -> None:
        self._global[principal] = _role_value(role)

    async def clear_global_role(self, principal: str) -> bool:
        return self._global.pop(principal, None) is not None

    async def set_tenant_role(
        self, principal: str, tenant: str, role: str, assigned_by: Optional[str] = None
    ) -> None:
        self._tenant[(principal, tenant)] = _role_value(role)

    async def remove_tenant_role(self, principal: str, tenant: str) -> bool:
        return self._tenant.pop((principal, tenant), None) is not None

    async def set_project_role(
        self, principal: str, project: str, role: str, assigned_by: Optional[str] = None
    ) -> None:
        if project not in self._project_tenant:
            raise ProjectNotFound(project)
        self._project[(principal, project)] = _role_value(role)

    async def remove_project_role(self, principal: str, project: str) -> bool:
        return self._project.pop((principal, project), None) is not None

    async def register_project(self, project: str, tenant: str, name: str = "") -> None:
        self._project_tenant[project] = tenant


class SQLAssignmentStore(WritableAssignmentStore):
    """
    Assignment store over SQLAlchemy async sessions.

    Driver and connection faults surface as ``StoreUnavailable``; retries, if
    any, are the responsibility of the engine's pool settings.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _scalar(self, query, operation: str):
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return result.scalar_one_or_none()
        except STORE_FAULTS as e:
            logger.error("Assignment store read failed", operation=operation, error=str(e))
            raise StoreUnavailable(f"Assignment store read failed: {operation}") from e

    async def global_role_of(self, principal: str) -> Optional[str]:
        return await self._scalar(
            select(GlobalRoleAssignment.role).where(GlobalRoleAssignment.principal_id == principal),
            "global_role_of",
        )

    async def tenant_role_of(self, principal: str, tenant: str) -> Optional[str]:
        return await self._scalar(
            select(TenantMembership.role).where(
                TenantMembership.principal_id == principal,
                TenantMembership.tenant_id == tenant,
            ),
            "tenant_role_of",
        )

    async def project_role_of(self, principal: str, project: str) -> Optional[str]:
        return await self._scalar(
            select(ProjectMembership.role).where(
                ProjectMembership.principal_id == principal,
                ProjectMembership.project_id == project,
            ),
            "project_role_of",
        )

    async def tenant_of_project(self, project: str) -> str:
        tenant = await self._scalar(
            select(Project.tenant_id).where(Project.id == project),
            "tenant_of_project",
        )
        if tenant is None:
            raise ProjectNotFound(project)
        return tenant

    async def role_snapshot(
        self,
        principal: str,
        tenant: str,
        project: Optional[str] = None,
    ) -> RoleSnapshot:
        try:
            async with self._session_factory() as session:
                global_role = (await session.execute(
                    select(GlobalRoleAssignment.role).where(GlobalRoleAssignment.principal_id == principal)
                )).scalar_one_or_none()
                tenant_role = (await session.execute(
                    select(TenantMembership.role).where(
                        TenantMembership.principal_id == principal,
                        TenantMembership.tenant_id == tenant,
                    )
                )).scalar_one_or_none()
                project_role = None
                if project:
                    project_role = (await session.execute(
                        select(ProjectMembership.role).where(
                            ProjectMembership.principal_id == principal,
                            ProjectMembership.project_id == project,
                        )
                    )).scalar_one_or_none()
        except STORE_FAULTS as e:
            logger.error("Assignment store read failed", operation="role_snapshot", error=str(e))
            raise StoreUnavailable("Assignment store read failed: role_snapshot") from e
        return RoleSnapshot(global_role, tenant_role, project_role)

    # ── writes ──────────────────────────────────────────────────

    async def _upsert(self, model, key: dict, values: dict, operation: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    record = await session.get(model, key)
                    if record is None:
                        session.add(model(**key, **values))
                    else:
                        for field, value in values.items():
                            setattr(record, field, value)
        except STORE_FAULTS as e:
            logger.error("Assignment store write failed", operation=operation, error=str(e))
            raise StoreUnavailable(f"Assignment store write failed: {operation}") from e

    async def _delete(self, statement, operation: str) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(statement)
                    return (result.rowcount or 0) > 0
        except STORE_FAULTS as e:
            logger.error("Assignment store write failed", operation=operation, error=str(e))
            raise StoreUnavailable(f"Assignment store write failed: {operation}") from e

    async def set_global_role(self, principal: str, role: str, assigned_by: Optional[str] = None) -> None:
        await self._upsert(
            GlobalRoleAssignment,
            {"principal_id": principal},
            {"role": _role_value(role), "granted_by": assigned_by},
            "set_global_role",
        )

    async def clear_global_role(self, principal: str) -> bool:
        return await self._delete(
            delete(GlobalRoleAssignment).where(GlobalRoleAssignment.principal_id == principal),
            "clear_global_role",
        )

    async def set_tenant_role(
        self, principal: str, tenant: str, role: str, assigned_by: Optional[str] = None
    ) -> None:
        await self._upsert(
            TenantMembership,
            {"tenant_id": tenant, "principal_id": principal},
            {"role": _role_value(role), "granted_by": assigned_by},
            "set_tenant_role",
        )

    async def remove_tenant_role(self, principal: str, tenant: str) -> bool:
        return await self._delete(
            delete(TenantMembership).where(
                TenantMembership.principal_id == principal,
                TenantMembership.tenant_id == tenant,
            ),
            "remove_tenant_role",
        )

    async def set_project_role(
        self, principal: str, project: str, role: str, assigned_by: Optional[str] = None
    ) -> None:
        await self.tenant_of_project(project)
        await self._upsert(
            ProjectMembership,
            {"project_id": project, "principal_id": principal},
            {"role": _role_value(role), "granted_by": assigned_by},
            "set_project_role",
        )

    async def remove_project_role(self, principal: str, project: str) -> bool:
        return await self._delete(
            delete(ProjectMembership).where(
                ProjectMembership.principal_id == principal,
                ProjectMembership.project_id == project,
            ),
            "remove_project_role",
        )

    async def register_tenant(self, tenant: str, slug: str, name: str = "") -> None:
        await self._upsert(Tenant, {"id": tenant}, {"slug": slug, "name": name or slug}, "register_tenant")

    async def register_project(self, project: str, tenant: str, name: str = "") -> None:
        await self._upsert(Project, {"id": project}, {"tenant_id": tenant, "name": name}, "register_project")
