"""
Role catalog and canonical permission definitions.

Three independent role layers grant permissions:

    GLOBAL   super_admin / admin / user / guest        (per principal)
    TENANT   owner / admin / editor / viewer           (per principal + tenant)
    PROJECT  owner / maintainer / contributor / viewer (per principal + project)

Permissions are ``<resource>:<action>`` tokens. The catalog maps every
``(layer, role)`` pair to a frozen permission set and carries a monotonic
version that changes whenever any mapping changes.
"""

from __future__ import annotations

import hashlib
import json
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Union

import structlog

from tenant_rbac.core.exceptions import CatalogError, UnknownRole

logger = structlog.get_logger()


class RoleLayer(str, Enum):
    GLOBAL = "global"
    TENANT = "tenant"
    PROJECT = "project"


# Explanation order: broader layers are listed first
LAYER_RANK: tuple[RoleLayer, ...] = (RoleLayer.GLOBAL, RoleLayer.TENANT, RoleLayer.PROJECT)


class GlobalRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"


class TenantRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


class ProjectRole(str, Enum):
    OWNER = "owner"
    MAINTAINER = "maintainer"
    CONTRIBUTOR = "contributor"
    VIEWER = "viewer"


LayerRole = Union[GlobalRole, TenantRole, ProjectRole]

ROLE_ENUMS: dict[RoleLayer, type[Enum]] = {
    RoleLayer.GLOBAL: GlobalRole,
    RoleLayer.TENANT: TenantRole,
    RoleLayer.PROJECT: ProjectRole,
}


def layer_of(role: LayerRole) -> RoleLayer:
    """Tag of a role variant."""
    for layer, enum_cls in ROLE_ENUMS.items():
        if isinstance(role, enum_cls):
            return layer
    raise TypeError(f"Not a role variant: {role!r}")


# ==================== Permission vocabulary ====================

PERMISSIONS_BY_RESOURCE: dict[str, tuple[str, ...]] = {
    "tenant": ("read", "edit", "manage_members", "delete"),
    "project": ("create", "read", "edit", "delete", "manage"),
    "test_suite": ("create", "read", "edit", "delete", "execute"),
    "test_case": ("create", "read", "edit", "delete"),
    "execution": ("read", "delete"),
    "report": ("read", "create", "export"),
    "user": ("create", "read", "edit", "delete", "manage_permissions"),
    "settings": ("read", "edit"),
}

# Resource kinds a project role is allowed to contribute
PROJECT_SCOPED_RESOURCES: frozenset[str] = frozenset(
    {"project", "test_suite", "test_case", "execution", "report"}
)

ALL_PERMISSIONS: frozenset[str] = frozenset(
    f"{resource}:{action}"
    for resource, actions in PERMISSIONS_BY_RESOURCE.items()
    for action in actions
)


def normalize_permission(permission: str) -> str:
    return permission.strip().lower()


def resource_of(permission: str) -> str:
    return permission.split(":", 1)[0]


def _split(permission: str) -> tuple[str, str]:
    resource, sep, action = permission.partition(":")
    if not sep or not resource or not action:
        raise CatalogError(f"Malformed permission token: '{permission}'")
    return resource, action


# ==================== Role metadata ====================

@dataclass(frozen=True)
class RoleInfo:
    """Display metadata for a role; ``level`` ranks roles within a layer."""
    layer: RoleLayer
    role: str
    label: str
    description: str
    level: int


ROLE_INFO: dict[tuple[RoleLayer, str], RoleInfo] = {
    (RoleLayer.GLOBAL, GlobalRole.SUPER_ADMIN.value): RoleInfo(
        RoleLayer.GLOBAL, "super_admin", "Super Admin",
        "Unrestricted access to every tenant and project", 100,
    ),
    (RoleLayer.GLOBAL, GlobalRole.ADMIN.value): RoleInfo(
        RoleLayer.GLOBAL, "admin", "Administrator",
        "Manages users and application settings", 80,
    ),
    (RoleLayer.GLOBAL, GlobalRole.USER.value): RoleInfo(
        RoleLayer.GLOBAL, "user", "User",
        "Regular application account", 30,
    ),
    (RoleLayer.GLOBAL, GlobalRole.GUEST.value): RoleInfo(
        RoleLayer.GLOBAL, "guest", "Guest",
        "Invited account without application-level grants", 10,
    ),
    (RoleLayer.TENANT, TenantRole.OWNER.value): RoleInfo(
        RoleLayer.TENANT, "owner", "Owner",
        "Full control of the organization", 100,
    ),
    (RoleLayer.TENANT, TenantRole.ADMIN.value): RoleInfo(
        RoleLayer.TENANT, "admin", "Admin",
        "Manages members and every project of the organization", 80,
    ),
    (RoleLayer.TENANT, TenantRole.EDITOR.value): RoleInfo(
        RoleLayer.TENANT, "editor", "Editor",
        "Creates and edits test assets across the organization", 50,
    ),
    (RoleLayer.TENANT, TenantRole.VIEWER.value): RoleInfo(
        RoleLayer.TENANT, "viewer", "Viewer",
        "Read-only access to the organization", 20,
    ),
    (RoleLayer.PROJECT, ProjectRole.OWNER.value): RoleInfo(
        RoleLayer.PROJECT, "owner", "Owner",
        "Full control of the project, including members and deletion", 100,
    ),
    (RoleLayer.PROJECT, ProjectRole.MAINTAINER.value): RoleInfo(
        RoleLayer.PROJECT, "maintainer", "Maintainer",
        "Manages test suites, cases and executions", 70,
    ),
    (RoleLayer.PROJECT, ProjectRole.CONTRIBUTOR.value): RoleInfo(
        RoleLayer.PROJECT, "contributor", "Contributor",
        "Creates and edits tests, runs test suites", 50,
    ),
    (RoleLayer.PROJECT, ProjectRole.VIEWER.value): RoleInfo(
        RoleLayer.PROJECT, "viewer", "Viewer",
        "Read-only access to the project", 20,
    ),
}


def get_role_info(layer: RoleLayer, role: str) -> Optional[RoleInfo]:
    return ROLE_INFO.get((RoleLayer(layer), str(getattr(role, "value", role))))


def _perms(*groups: Iterable[str]) -> frozenset[str]:
    return frozenset(p for group in groups for p in group)


def _all_of(resource: str) -> tuple[str, ...]:
    return tuple(f"{resource}:{action}" for action in PERMISSIONS_BY_RESOURCE[resource])


# ==================== Default role definitions ====================

DEFAULT_ROLE_DEFINITIONS: dict[RoleLayer, dict[str, frozenset[str]]] = {
    RoleLayer.GLOBAL: {
        GlobalRole.SUPER_ADMIN.value: ALL_PERMISSIONS,
        GlobalRole.ADMIN.value: _perms(
            _all_of("user"),
            _all_of("settings"),
        ),
        GlobalRole.USER.value: _perms(["settings:read"]),
        GlobalRole.GUEST.value: frozenset(),
    },
    RoleLayer.TENANT: {
        TenantRole.OWNER.value: _perms(
            _all_of("tenant"),
            _all_of("project"),
            _all_of("test_suite"),
            _all_of("test_case"),
            _all_of("execution"),
            _all_of("report"),
            ["user:read"],
        ),
        TenantRole.ADMIN.value: _perms(
            ["tenant:read", "tenant:edit", "tenant:manage_members"],
            ["project:create", "project:read", "project:edit", "project:manage"],
            _all_of("test_suite"),
            _all_of("test_case"),
            _all_of("execution"),
            _all_of("report"),
            ["user:read"],
        ),
        TenantRole.EDITOR.value: _perms(
            ["tenant:read", "project:read"],
            ["test_suite:create", "test_suite:read", "test_suite:edit", "test_suite:execute"],
            ["test_case:create", "test_case:read", "test_case:edit"],
            ["execution:read"],
            ["report:read", "report:create"],
        ),
        TenantRole.VIEWER.value: _perms(
            ["tenant:read", "project:read", "test_suite:read", "test_case:read"],
            ["execution:read", "report:read"],
        ),
    },
    RoleLayer.PROJECT: {
        ProjectRole.OWNER.value: _perms(
            ["project:read", "project:edit", "project:delete", "project:manage"],
            _all_of("test_suite"),
            _all_of("test_case"),
            _all_of("execution"),
            _all_of("report"),
        ),
        ProjectRole.MAINTAINER.value: _perms(
            ["project:read", "project:edit"],
            _all_of("test_suite"),
            _all_of("test_case"),
            ["execution:read"],
            _all_of("report"),
        ),
        ProjectRole.CONTRIBUTOR.value: _perms(
            ["project:read", "test_suite:read", "test_suite:execute"],
            ["test_case:create", "test_case:read", "test_case:edit"],
            ["execution:read"],
            ["report:read", "report:export"],
        ),
        ProjectRole.VIEWER.value: _perms(
            ["project:read", "test_suite:read", "test_case:read"],
            ["execution:read", "report:read"],
        ),
    },
}


# ==================== Catalog ====================

@dataclass(frozen=True)
class CatalogSnapshot:
    """One consistent version of the role definitions."""
    version: int
    definitions: Mapping[RoleLayer, Mapping[str, frozenset[str]]]
    vocabulary: frozenset[str]

    def permissions_for(self, layer: RoleLayer, role_name: str) -> frozenset[str]:
        layer = RoleLayer(layer)
        try:
            return self.definitions[layer][str(getattr(role_name, "value", role_name))]
        except KeyError:
            raise UnknownRole(layer.value, str(role_name)) from None


def validate_definitions(
    definitions: Mapping[RoleLayer, Mapping[str, Iterable[str]]],
    vocabulary: frozenset[str] = ALL_PERMISSIONS,
) -> dict[RoleLayer, dict[str, frozenset[str]]]:
    """
    Normalize and validate role definitions.

    - Every layer must be present and may only define its own role names.
    - Every granted token must be part of the permission vocabulary.
    - Project roles may only grant project-scoped resource kinds.
    - Every vocabulary entry must be reachable from at least one role.
    """
    normalized: dict[RoleLayer, dict[str, frozenset[str]]] = {}
    reachable: set[str] = set()

    for layer in RoleLayer:
        if layer not in definitions and layer.value not in definitions:
            raise CatalogError(f"Missing role definitions for the {layer.value} layer")
        raw_roles = definitions.get(layer, definitions.get(layer.value))
        allowed_names = {member.value for member in ROLE_ENUMS[layer]}
        roles: dict[str, frozenset[str]] = {}

        for role_name, permissions in raw_roles.items():
            role_name = str(getattr(role_name, "value", role_name))
            if role_name not in allowed_names:
                raise CatalogError(f"'{role_name}' is not a {layer.value} role")
            granted = frozenset(normalize_permission(p) for p in permissions)
            for permission in granted:
                resource, _ = _split(permission)
                if permission not in vocabulary:
                    raise CatalogError(f"Unknown permission '{permission}' in {layer.value}:{role_name}")
                if layer == RoleLayer.PROJECT and resource not in PROJECT_SCOPED_RESOURCES:
                    raise CatalogError(
                        f"Project role '{role_name}' grants non project-scoped permission '{permission}'"
                    )
            roles[role_name] = granted
            reachable |= granted
        normalized[layer] = roles

    unreachable = vocabulary - reachable
    if unreachable:
        raise CatalogError(f"Permissions not granted by any role: {sorted(unreachable)}")
    return normalized


class RoleCatalog:
    """
    Authoritative ``(layer, role) -> permissions`` mapping.

    The active snapshot is swapped atomically; readers that need several
    lookups against one version should take ``snapshot()`` once.
    """

    def __init__(
        self,
        definitions: Optional[Mapping[RoleLayer, Mapping[str, Iterable[str]]]] = None,
        version: int = 1,
    ):
        self._lock = threading.Lock()
        self._snapshot = self._build(definitions or DEFAULT_ROLE_DEFINITIONS, version)

    @staticmethod
    def _build(definitions, version: int) -> CatalogSnapshot:
        if version < 1:
            raise CatalogError("Catalog version must be a positive integer")
        normalized = validate_definitions(definitions)
        frozen = MappingProxyType({
            layer: MappingProxyType(dict(roles)) for layer, roles in normalized.items()
        })
        return CatalogSnapshot(version=version, definitions=frozen, vocabulary=ALL_PERMISSIONS)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "RoleCatalog":
        """
        Load a catalog from JSON::

            {"version": 3, "roles": {"global": {...}, "tenant": {...}, "project": {...}}}
        """
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CatalogError(f"Cannot load role catalog from {path}: {e}") from e

        roles = payload.get("roles")
        if not isinstance(roles, dict):
            raise CatalogError("Role catalog file must contain a 'roles' object")
        catalog = cls(definitions=roles, version=int(payload.get("version", 1)))
        logger.info("Role catalog loaded", path=str(path), version=catalog.current_version())
        return catalog

    # ── lookups ─────────────────────────────────────────────────

    def snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    def current_version(self) -> int:
        return self._snapshot.version

    def permissions_for(self, layer: RoleLayer, role_name: str) -> frozenset[str]:
        return self._snapshot.permissions_for(layer, role_name)

    def all_permissions(self) -> frozenset[str]:
        return self._snapshot.vocabulary

    def is_known_permission(self, permission: str) -> bool:
        return normalize_permission(permission) in self._snapshot.vocabulary

    def roles(self, layer: RoleLayer) -> tuple[str, ...]:
        return tuple(self._snapshot.definitions[RoleLayer(layer)])

    def permission_matrix(self, permissions: Iterable[str]) -> dict[str, dict[str, bool]]:
        """Resource -> action -> granted, over the whole vocabulary."""
        granted = set(permissions)
        return {
            resource: {action: f"{resource}:{action}" in granted for action in actions}
            for resource, actions in PERMISSIONS_BY_RESOURCE.items()
        }

    # ── administrative edit path ────────────────────────────────

    def replace_definitions(
        self,
        definitions: Mapping[RoleLayer, Mapping[str, Iterable[str]]],
    ) -> int:
        """Swap in new definitions and bump the version. Returns the new version."""
        with self._lock:
            new_snapshot = self._build(definitions, self._snapshot.version + 1)
            self._snapshot = new_snapshot
        logger.info("Role catalog replaced", version=new_snapshot.version)
        return new_snapshot.version


@dataclass(frozen=True)
class RoleSnapshot:
    """Role values held by a principal in one (tenant, project) context."""
    global_role: Optional[str] = None
    tenant_role: Optional[str] = None
    project_role: Optional[str] = None

    @property
    def token(self) -> str:
        """Short stable hash of the three role values."""
        raw = "|".join(role or "-" for role in (self.global_role, self.tenant_role, self.project_role))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]

    def role_for(self, layer: RoleLayer) -> Optional[str]:
        return {
            RoleLayer.GLOBAL: self.global_role,
            RoleLayer.TENANT: self.tenant_role,
            RoleLayer.PROJECT: self.project_role,
        }[RoleLayer(layer)]

    def as_dict(self) -> dict[str, Optional[str]]:
        return {
            "global_role": self.global_role,
            "tenant_role": self.tenant_role,
            "project_role": self.project_role,
        }


def highest_role_level(
    global_role: Optional[str] = None,
    tenant_role: Optional[str] = None,
    project_role: Optional[str] = None,
) -> int:
    """Highest display level across the held roles; 0 when none are held."""
    levels = [0]
    for layer, role in (
        (RoleLayer.GLOBAL, global_role),
        (RoleLayer.TENANT, tenant_role),
        (RoleLayer.PROJECT, project_role),
    ):
        info = get_role_info(layer, role) if role else None
        if info:
            levels.append(info.level)
    return max(levels)
