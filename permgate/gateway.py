"""DataStore gateway abstraction: base class and query filters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from permgate.types import Module, Permission, Role, RoleGrant, UserOverride


@dataclass(frozen=True, slots=True)
class GrantFilter:
    """Selects ``role_permissions`` rows for a set of roles."""

    role_ids: tuple[str, ...]
    include_revoked: bool = False

    def validate(self) -> None:
        if not self.role_ids:
            raise ValueError("GrantFilter needs at least one role id")
        if any(not rid for rid in self.role_ids):
            raise ValueError("GrantFilter role ids must be non-empty")


@dataclass(frozen=True, slots=True)
class OverrideFilter:
    """Selects ``user_permissions`` rows for one user.

    When ``active_at`` is set, rows whose ``expires_at`` is at or before it
    are left out.
    """

    user_id: str
    active_at: datetime | None = None

    def validate(self) -> None:
        if not self.user_id:
            raise ValueError("OverrideFilter needs a user id")
        if self.active_at is not None and self.active_at.tzinfo is None:
            raise ValueError("OverrideFilter.active_at must be timezone-aware")


class DataStoreGateway(ABC):
    """Abstract source of roles, grants, overrides and modules.

    Implementations raise :class:`~permgate.errors.DataSourceUnavailable`
    when the relation behind a query is missing and
    :class:`~permgate.errors.DataSourceError` for any other failure.

    The write operations are optional; the default implementations raise
    ``NotImplementedError`` so read-only stores only need the four reads.
    """

    @abstractmethod
    async def fetch_active_roles_for_user(self, user_id: str) -> list[Role]:
        """Return the user's active roles (assignment and role both active)."""
        ...

    @abstractmethod
    async def fetch_role_grants(self, role_ids: list[str]) -> list[RoleGrant]:
        """Return the permission grants attached to *role_ids*."""
        ...

    @abstractmethod
    async def fetch_user_overrides(self, user_id: str) -> list[UserOverride]:
        """Return the direct grants and revocations for *user_id*."""
        ...

    @abstractmethod
    async def fetch_all_modules(self) -> list[Module]:
        """Return every active module."""
        ...

    async def fetch_default_role(self) -> Role | None:
        return None

    async def fetch_all_permissions(self) -> list[Permission]:
        """Return every active permission, for administration screens."""
        raise NotImplementedError(f"{type(self).__name__} cannot list permissions")

    async def grant_user_permission(
        self,
        user_id: str,
        permission_id: str,
        *,
        granted: bool = True,
        assigned_by: str | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        raise NotImplementedError(f"{type(self).__name__} is read-only")

    async def revoke_user_permission(self, user_id: str, permission_id: str) -> None:
        raise NotImplementedError(f"{type(self).__name__} is read-only")

    async def assign_role(
        self, user_id: str, role_id: str, *, assigned_by: str | None = None
    ) -> None:
        raise NotImplementedError(f"{type(self).__name__} is read-only")

    async def remove_role(self, user_id: str, role_id: str) -> None:
        raise NotImplementedError(f"{type(self).__name__} is read-only")
