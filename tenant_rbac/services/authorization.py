"""
Authorization Gate
Single entry point request handlers use to check permissions.

Every call yields a ``Decision`` with a deterministic, auditable reason.
Legitimate denies are returned, never raised. Infrastructure faults are
recorded as a deny and then raised as ``StoreUnavailable`` carrying that
decision, so nothing downstream can mistake a fault for an allow.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional, Sequence

import structlog

from tenant_rbac.core.exceptions import (
    PermissionDenied,
    ProjectNotFound,
    StoreUnavailable,
    TenantMismatch,
)
from tenant_rbac.core.logging import get_audit_logger
from tenant_rbac.core.permission_resolver import AssignmentPermissionResolver, EffectivePermissionSet
from tenant_rbac.core.rbac import LAYER_RANK, RoleCatalog, RoleLayer, RoleSnapshot, normalize_permission
from tenant_rbac.services.decision_cache import CacheKey, DecisionCache

logger = structlog.get_logger()


class DecisionCode(str, Enum):
    GRANTED = "granted"
    SUPER_ADMIN = "super_admin"
    ISOLATION = "isolation"
    NOT_GRANTED = "not_granted"
    PROJECT_NOT_FOUND = "project_not_found"
    TENANT_MISMATCH = "tenant_mismatch"
    UNKNOWN_PERMISSION = "unknown_permission"
    MISSING_CONTEXT = "missing_context"
    STORE_UNAVAILABLE = "store_unavailable"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class MatchMode(str, Enum):
    ONE = "one"
    ANY = "any"
    ALL = "all"


@dataclass(frozen=True)
class Decision:
    """Outcome of one authorization check."""
    allowed: bool
    code: DecisionCode
    reason: str
    principal: str
    tenant: Optional[str]
    project: Optional[str]
    permissions: tuple[str, ...]
    matched: tuple[str, ...] = ()
    layers: tuple[RoleLayer, ...] = ()
    roles: Optional[RoleSnapshot] = None
    catalog_version: Optional[int] = None

    @property
    def denied(self) -> bool:
        return not self.allowed

    def to_log_dict(self) -> dict[str, Any]:
        return {
            "principal": self.principal,
            "tenant": self.tenant,
            "project": self.project,
            "permissions": list(self.permissions),
            "allowed": self.allowed,
            "code": self.code.value,
            "reason": self.reason,
            "layers": [layer.value for layer in self.layers],
            "roles": self.roles.as_dict() if self.roles else None,
            "catalog_version": self.catalog_version,
        }


@dataclass(frozen=True)
class AssignmentScope:
    """Scope of an assignment mutation reported through ``assignment_changed``."""
    kind: RoleLayer
    id: Optional[str] = field(default=None)

    @classmethod
    def global_(cls) -> "AssignmentScope":
        return cls(RoleLayer.GLOBAL)

    @classmethod
    def tenant(cls, tenant: str) -> "AssignmentScope":
        return cls(RoleLayer.TENANT, tenant)

    @classmethod
    def project(cls, project: str) -> "AssignmentScope":
        return cls(RoleLayer.PROJECT, project)


def _describe_roles(eps: EffectivePermissionSet, layers: Iterable[RoleLayer]) -> str:
    return ", ".join(f"{layer.value} role '{eps.roles.role_for(layer)}'" for layer in layers)


def _held_layers(eps: EffectivePermissionSet) -> tuple[RoleLayer, ...]:
    return tuple(layer for layer in LAYER_RANK if layer in eps.contributions)


class AuthorizationGate:
    """
    Wraps the resolver and the decision cache.

    Args:
        catalog: Role catalog shared with the resolver
        resolver: Effective permission resolver
        cache: Optional decision cache; None disables caching
        store_timeout: Upper bound in seconds for one resolution; None disables it
    """

    def __init__(
        self,
        catalog: RoleCatalog,
        resolver: AssignmentPermissionResolver,
        cache: Optional[DecisionCache] = None,
        store_timeout: Optional[float] = None,
    ):
        self.catalog = catalog
        self.resolver = resolver
        self.cache = cache
        self.store_timeout = store_timeout
        self._audit = get_audit_logger()

    # ── checks ──────────────────────────────────────────────────

    async def require(
        self,
        principal: str,
        tenant: Optional[str],
        project: Optional[str],
        permission: str,
    ) -> Decision:
        """Allow iff the effective set contains ``permission``."""
        return await self._check(principal, tenant, project, [permission], MatchMode.ONE)

    async def require_any(
        self,
        principal: str,
        tenant: Optional[str],
        project: Optional[str],
        permissions: Sequence[str],
    ) -> Decision:
        """Allow iff the effective set intersects ``permissions``."""
        return await self._check(principal, tenant, project, list(permissions), MatchMode.ANY)

    async def require_all(
        self,
        principal: str,
        tenant: Optional[str],
        project: Optional[str],
        permissions: Sequence[str],
    ) -> Decision:
        """Allow iff the effective set contains every one of ``permissions``."""
        return await self._check(principal, tenant, project, list(permissions), MatchMode.ALL)

    async def enforce(
        self,
        principal: str,
        tenant: Optional[str],
        project: Optional[str],
        permission: str,
    ) -> Decision:
        """Like ``require`` but raises ``PermissionDenied`` on deny."""
        decision = await self.require(principal, tenant, project, permission)
        if not decision.allowed:
            raise PermissionDenied(decision)
        return decision

    async def effective_permissions(
        self,
        principal: str,
        tenant: Optional[str] = None,
        project: Optional[str] = None,
    ) -> EffectivePermissionSet:
        """Resolved set for a context; resolution errors propagate unchanged."""
        if self.store_timeout is None:
            return await self._effective(principal, tenant, project)
        try:
            return await asyncio.wait_for(self._effective(principal, tenant, project), self.store_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable(f"Permission resolution exceeded {self.store_timeout}s") from e

    async def explain(
        self,
        principal: str,
        tenant: Optional[str] = None,
        project: Optional[str] = None,
    ) -> dict[str, Any]:
        """Effective set plus the resource/action matrix, for audit and admin views."""
        eps = await self.effective_permissions(principal, tenant, project)
        return {
            **eps.to_dict(),
            "matrix": self.catalog.permission_matrix(eps.permissions),
        }

    # ── administrative notification hooks ───────────────────────

    async def catalog_changed(self) -> None:
        logger.info("Role catalog changed", version=self.catalog.current_version())
        if self.cache is not None:
            await self.cache.clear()

    async def assignment_changed(self, principal: str, scope: AssignmentScope) -> None:
        logger.info(
            "Role assignment changed",
            principal=principal,
            scope=scope.kind.value,
            scope_id=scope.id,
        )
        if self.cache is None:
            return
        if scope.kind == RoleLayer.GLOBAL:
            await self.cache.invalidate_principal(principal)
        elif scope.kind == RoleLayer.TENANT:
            await self.cache.invalidate_tenant(principal, scope.id)
        else:
            await self.cache.invalidate_project(principal, scope.id)

    # ── internals ───────────────────────────────────────────────

    async def _effective(
        self,
        principal: str,
        tenant: Optional[str],
        project: Optional[str],
    ) -> EffectivePermissionSet:
        catalog = self.catalog.snapshot()
        resolved_tenant = await self.resolver.resolve_tenant(tenant, project)

        if self.cache is None:
            roles = await self.resolver.read_roles(principal, resolved_tenant, project)
            return self.resolver.combine(principal, resolved_tenant, project, roles, catalog)

        # Generation is taken before the role read so a concurrent invalidation
        # makes the later put a no-op
        generation = self.cache.generation(principal, resolved_tenant, project)
        roles = await self.resolver.read_roles(principal, resolved_tenant, project)
        key = CacheKey(principal, resolved_tenant, project, catalog.version)

        cached = await self.cache.get(key, roles.token)
        if cached is not None:
            return cached

        eps = self.resolver.combine(principal, resolved_tenant, project, roles, catalog)
        await self.cache.put(key, eps, generation=generation)
        return eps

    async def _check(
        self,
        principal: str,
        tenant: Optional[str],
        project: Optional[str],
        permissions: list[str],
        mode: MatchMode,
    ) -> Decision:
        requested = tuple(dict.fromkeys(normalize_permission(p) for p in permissions if p and p.strip()))

        def deny(code: DecisionCode, reason: str, **extra) -> Decision:
            return Decision(
                allowed=False,
                code=code,
                reason=reason,
                principal=principal,
                tenant=tenant,
                project=project,
                permissions=requested,
                **extra,
            )

        unknown = [p for p in requested if not self.catalog.is_known_permission(p)]
        if not requested or (unknown and mode != MatchMode.ANY) or len(unknown) == len(requested):
            logger.warning("Authorization check for unknown permission", permissions=unknown or list(permissions))
            return self._record(deny(
                DecisionCode.UNKNOWN_PERMISSION,
                f"unknown permission(s): {', '.join(unknown) or '<none>'}",
            ))

        if tenant is None and project is None:
            return self._record(deny(DecisionCode.MISSING_CONTEXT, "no tenant or project given"))

        try:
            eps = await self.effective_permissions(principal, tenant, project)
        except ProjectNotFound as e:
            return self._record(deny(DecisionCode.PROJECT_NOT_FOUND, f"project '{e.project}' not found"))
        except TenantMismatch as e:
            return self._record(deny(
                DecisionCode.TENANT_MISMATCH,
                f"project '{e.project}' does not belong to tenant '{e.tenant}'",
            ))
        except StoreUnavailable as e:
            decision = self._record(deny(DecisionCode.STORE_UNAVAILABLE, "assignment store unavailable"))
            raise StoreUnavailable(str(e), decision=decision) from e
        except asyncio.CancelledError:
            self._record(deny(DecisionCode.CANCELLED, "resolution cancelled"))
            raise
        except Exception:
            logger.exception("Permission resolution failed", principal=principal, tenant=tenant, project=project)
            self._record(deny(DecisionCode.INTERNAL_ERROR, "permission resolution failed"))
            raise

        return self._record(self._decide(eps, requested, mode))

    def _decide(self, eps: EffectivePermissionSet, requested: tuple[str, ...], mode: MatchMode) -> Decision:
        matched = tuple(p for p in requested if eps.has(p))
        common = dict(
            principal=eps.principal,
            tenant=eps.tenant,
            project=eps.project,
            permissions=requested,
            matched=matched,
            roles=eps.roles,
            catalog_version=eps.catalog_version,
        )

        if eps.isolated:
            return Decision(
                allowed=False,
                code=DecisionCode.ISOLATION,
                reason=f"no tenant role in tenant '{eps.tenant}'; project and global grants do not apply",
                **common,
            )

        allowed = bool(matched) if mode != MatchMode.ALL else len(matched) == len(requested)

        if allowed and eps.super_admin:
            return Decision(
                allowed=True,
                code=DecisionCode.SUPER_ADMIN,
                reason="granted by global role 'super_admin'",
                layers=(RoleLayer.GLOBAL,),
                **common,
            )

        if allowed:
            layers: list[RoleLayer] = []
            for permission in matched:
                for layer in eps.layers_granting(permission):
                    if layer not in layers:
                        layers.append(layer)
            ordered = tuple(layer for layer in LAYER_RANK if layer in layers)
            if mode == MatchMode.ALL:
                reason = f"all of {list(requested)} granted by {_describe_roles(eps, ordered)}"
            else:
                reason = "; ".join(
                    f"'{p}' granted by {_describe_roles(eps, eps.layers_granting(p))}" for p in matched
                )
            return Decision(
                allowed=True,
                code=DecisionCode.GRANTED,
                reason=reason,
                layers=ordered,
                **common,
            )

        held = _held_layers(eps)
        missing = [p for p in requested if p not in eps.permissions]
        reason = f"{', '.join(repr(p) for p in missing)} not granted"
        reason += f" by {_describe_roles(eps, held)}" if held else " by any held role"
        if eps.unknown_roles:
            ignored = ", ".join(f"{layer.value} role '{role}'" for layer, role in eps.unknown_roles)
            reason += f"; ignored unknown {ignored}"
        return Decision(allowed=False, code=DecisionCode.NOT_GRANTED, reason=reason, **common)

    def _record(self, decision: Decision) -> Decision:
        if decision.code in (DecisionCode.STORE_UNAVAILABLE, DecisionCode.INTERNAL_ERROR):
            self._audit.warning("authorization_decision", **decision.to_log_dict())
        else:
            self._audit.info("authorization_decision", **decision.to_log_dict())
        return decision
