"""
Authorization Errors
Failure taxonomy shared by the catalog, the assignment stores and the gate
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from tenant_rbac.services.authorization import Decision

# The only text allowed to cross the authorization boundary
NOT_PERMITTED_MESSAGE = "Action not permitted"


class RBACError(Exception):
    """Base class for authorization engine errors"""


class CatalogError(RBACError):
    """Role catalog definitions are malformed or inconsistent"""


class UnknownRole(RBACError):
    """A role name is not defined for the given layer"""

    def __init__(self, layer: str, role: str):
        self.layer = layer
        self.role = role
        super().__init__(f"Role '{role}' is not defined for the {layer} layer")


class ProjectNotFound(RBACError):
    """The project has no owning tenant"""

    def __init__(self, project: str):
        self.project = project
        super().__init__(f"Project '{project}' not found")


class TenantMismatch(RBACError):
    """A project was addressed under a tenant that does not own it"""

    def __init__(self, project: str, tenant: str, owner: str):
        self.project = project
        self.tenant = tenant
        self.owner = owner
        super().__init__(f"Project '{project}' is not owned by tenant '{tenant}'")


class StoreUnavailable(RBACError):
    """
    Transient assignment store fault.

    When raised by the authorization gate, ``decision`` holds the deny
    decision that was recorded for the request.
    """

    def __init__(self, message: str = "Assignment store unavailable", decision: Optional["Decision"] = None):
        self.decision = decision
        super().__init__(message)


class CacheStale(RBACError):
    """Cached permission set no longer matches the catalog or assignments"""


class PermissionDenied(RBACError):
    """Raised by enforcing call sites when the gate denies an action"""

    def __init__(self, decision: "Decision"):
        self.decision = decision
        super().__init__(NOT_PERMITTED_MESSAGE)
