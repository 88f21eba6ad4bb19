"""Permission and access-resolution engine.

This package provides:

* **Resolution** of a user's effective permissions from their active
  roles and direct overrides (``PermissionResolver``).
* **A per-user session cache** with a 30 minute freshness window,
  single-flight loading and invalidation (``PermissionSession``,
  ``SessionRegistry``).
* **Synchronous access decisions** that fail closed (``AccessDecisions``).
* **A TTL cache** for memoized lookups about arbitrary users
  (``TTLCache``, ``PermissionService``).
* **Module tree construction** for navigation (``build_module_tree``).

The data store is reached through ``DataStoreGateway``; ``permgate.db``
ships a SQLAlchemy implementation and ``permgate.app`` an HTTP surface.
"""

from __future__ import annotations

from permgate.access import AccessDecisions
from permgate.cache import TTLCache
from permgate.errors import (
    DataSourceError,
    DataSourceUnavailable,
    PermissionEngineError,
    ResolutionTimeout,
)
from permgate.gateway import DataStoreGateway, GrantFilter, OverrideFilter
from permgate.resolver import PermissionResolver, merge_permissions
from permgate.service import PermissionService
from permgate.session import LoadState, PermissionSession, SessionRegistry
from permgate.tree import build_module_tree
from permgate.types import (
    Action,
    EffectivePermissionSet,
    Module,
    Permission,
    Role,
    RoleGrant,
    UserOverride,
)

__all__ = [
    "AccessDecisions",
    "Action",
    "DataSourceError",
    "DataSourceUnavailable",
    "DataStoreGateway",
    "EffectivePermissionSet",
    "GrantFilter",
    "LoadState",
    "Module",
    "OverrideFilter",
    "Permission",
    "PermissionEngineError",
    "PermissionResolver",
    "PermissionService",
    "PermissionSession",
    "ResolutionTimeout",
    "Role",
    "RoleGrant",
    "SessionRegistry",
    "TTLCache",
    "UserOverride",
    "build_module_tree",
    "merge_permissions",
]
