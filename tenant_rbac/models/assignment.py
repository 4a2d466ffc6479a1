"""
Role Assignment Models
One row per held role; composite primary keys enforce one role per scope
"""

from sqlalchemy import Column, String, ForeignKey, Index
from tenant_rbac.models.base import AssignmentModel


class GlobalRoleAssignment(AssignmentModel):
    """Application-level role of a principal (at most one)"""
    __tablename__ = "global_role_assignments"

    principal_id = Column(String(128), primary_key=True)

    def __repr__(self):
        return f"<GlobalRoleAssignment(principal_id='{self.principal_id}', role='{self.role}')>"


class TenantMembership(AssignmentModel):
    """Tenant role of a principal within one tenant"""
    __tablename__ = "tenant_memberships"

    tenant_id = Column(
        String(64),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        primary_key=True,
    )
    principal_id = Column(String(128), primary_key=True)

    __table_args__ = (
        Index("ix_tenant_membership_principal", "principal_id"),
    )

    def __repr__(self):
        return f"<TenantMembership(tenant_id='{self.tenant_id}', principal_id='{self.principal_id}', role='{self.role}')>"


class ProjectMembership(AssignmentModel):
    """Project role of a principal within one project"""
    __tablename__ = "project_memberships"

    project_id = Column(
        String(64),
        ForeignKey("projects.id", ondelete="CASCADE"),
        primary_key=True,
    )
    principal_id = Column(String(128), primary_key=True)

    __table_args__ = (
        Index("ix_project_membership_principal", "principal_id"),
    )

    def __repr__(self):
        return f"<ProjectMembership(project_id='{self.project_id}', principal_id='{self.principal_id}', role='{self.role}')>"
