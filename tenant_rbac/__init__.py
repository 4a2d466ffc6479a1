"""
Multi-tenant role-based access control engine.

Usage:
    runtime = await create_runtime(settings)
    decision = await runtime.gate.require(principal, tenant_id, None, "report:export")
"""

from tenant_rbac.core.exceptions import (
    CatalogError,
    PermissionDenied,
    ProjectNotFound,
    RBACError,
    StoreUnavailable,
    TenantMismatch,
    UnknownRole,
)
from tenant_rbac.core.permission_resolver import EffectivePermissionSet, combine_layers
from tenant_rbac.core.rbac import GlobalRole, ProjectRole, RoleCatalog, RoleLayer, RoleSnapshot, TenantRole
from tenant_rbac.runtime import AuthorizationRuntime, create_runtime
from tenant_rbac.services.authorization import AssignmentScope, AuthorizationGate, Decision, DecisionCode

__version__ = "0.1.0"

__all__ = [
    # Catalog
    "RoleCatalog",
    "RoleLayer",
    "GlobalRole",
    "TenantRole",
    "ProjectRole",
    "RoleSnapshot",

    # Resolution
    "EffectivePermissionSet",
    "combine_layers",

    # Gate
    "AuthorizationGate",
    "AssignmentScope",
    "Decision",
    "DecisionCode",

    # Runtime
    "AuthorizationRuntime",
    "create_runtime",

    # Errors
    "RBACError",
    "CatalogError",
    "UnknownRole",
    "ProjectNotFound",
    "TenantMismatch",
    "StoreUnavailable",
    "PermissionDenied",
]
