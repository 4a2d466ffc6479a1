"""
Tenant and Project Models
Organization boundaries and the projects they own
"""

from sqlalchemy import Column, String, ForeignKey
from sqlalchemy.orm import relationship
from tenant_rbac.models.base import BaseModel


class Tenant(BaseModel):
    """Organization boundary; every project and tenant role is scoped under one tenant"""
    __tablename__ = "tenants"

    id = Column(String(64), primary_key=True)
    slug = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)

    projects = relationship("Project", back_populates="tenant", lazy="selectin")

    def __repr__(self):
        return f"<Tenant(id='{self.id}', slug='{self.slug}')>"


class Project(BaseModel):
    """Unit of work owned by exactly one tenant"""
    __tablename__ = "projects"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(
        String(64),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False, default="")

    tenant = relationship("Tenant", back_populates="projects")

    def __repr__(self):
        return f"<Project(id='{self.id}', tenant_id='{self.tenant_id}')>"
