"""
Base Model Classes
Shared columns for organization and assignment tables
"""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func
from tenant_rbac.core.database import Base


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class RoleGrantMixin:
    """Role value held in one scope and the principal that granted it"""
    role = Column(String(32), nullable=False)
    granted_by = Column(String(128), nullable=True)


class BaseModel(Base, TimestampMixin):
    """Base model with timestamps; primary keys are external ids"""
    __abstract__ = True


class AssignmentModel(BaseModel, RoleGrantMixin):
    """Base for one-role-per-scope assignment tables"""
    __abstract__ = True
