"""Domain data model for the permission engine.

These are plain dataclasses handed between the gateway, the resolver and
the session cache.  ORM rows live in ``permgate.models``; the gateway is
responsible for turning them into these objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Action(str, Enum):
    """Operation a permission authorises on its module."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    EXECUTE = "execute"


@dataclass(frozen=True, slots=True)
class Role:
    id: str
    name: str
    description: str | None = None
    is_active: bool = True
    is_default: bool = False


@dataclass(slots=True)
class Module:
    """A navigable application area.

    ``children`` is derived and only populated by
    :func:`permgate.tree.build_module_tree`; it is never persisted.
    """

    id: str
    name: str
    description: str | None = None
    path: str | None = None
    icon: str | None = None
    is_active: bool = True
    parent_id: str | None = None
    sort_order: int = 0
    children: list[Module] = field(default_factory=list, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class Permission:
    """A named permission, optionally bound to a module.

    ``module`` is the module snapshot joined in by the gateway, if any.
    """

    id: str
    name: str
    action: Action
    description: str | None = None
    module_id: str | None = None
    is_active: bool = True
    module: Module | None = field(default=None, compare=False)


@dataclass(frozen=True, slots=True)
class RoleGrant:
    """A ``role_permissions`` row joined to its permission."""

    role_id: str
    permission: Permission
    granted: bool = True


@dataclass(frozen=True, slots=True)
class UserOverride:
    """A direct grant (``granted=True``) or revocation for one user."""

    user_id: str
    permission: Permission
    granted: bool = True
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True, slots=True)
class EffectivePermissionSet:
    """Materialised authorization state for one user.

    Immutable: the session cache swaps whole instances so readers never
    see fields from two different loads.
    """

    user_id: str
    permission_names: frozenset[str] = frozenset()
    detailed: tuple[Permission, ...] = ()
    modules: tuple[Module, ...] = ()
    accessible_modules: tuple[Module, ...] = ()
    roles: tuple[Role, ...] = ()

    def summary(self) -> dict[str, object]:
        """JSON-friendly view used by the HTTP layer."""
        return {
            "user_id": self.user_id,
            "permissions": sorted(self.permission_names),
            "roles": [r.name for r in self.roles],
            "modules": [
                {"id": m.id, "name": m.name, "path": m.path}
                for m in self.accessible_modules
            ],
        }
