"""
SQLAlchemy Models Package
Persisted tenants, projects and role assignments
"""

from tenant_rbac.models.tenant import Tenant, Project
from tenant_rbac.models.assignment import GlobalRoleAssignment, TenantMembership, ProjectMembership

__all__ = [
    "Tenant",
    "Project",
    "GlobalRoleAssignment",
    "TenantMembership",
    "ProjectMembership",
]
