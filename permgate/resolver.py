"""Permission resolution: roles + overrides -> effective permission set."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable

from permgate.errors import DataSourceUnavailable
from permgate.gateway import DataStoreGateway
from permgate.types import (
    Action,
    EffectivePermissionSet,
    Module,
    Permission,
    Role,
    RoleGrant,
    UserOverride,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def merge_permissions(
    user_id: str,
    roles: Iterable[Role],
    grants: Iterable[RoleGrant],
    overrides: Iterable[UserOverride],
    now: datetime,
) -> EffectivePermissionSet:
    """Combine role grants and user overrides into one effective set.

    * Every role row with ``granted=True`` contributes its permission; a
      ``granted=False`` row only withholds that role's own contribution.
    * Overrides are applied afterwards.  ``granted=True`` adds the
      permission, ``granted=False`` removes it whatever the roles say.
    * Expired overrides and inactive permissions contribute nothing.
    """
    by_id: dict[str, Permission] = {}

    for grant in grants:
        if grant.granted and grant.permission.is_active:
            by_id[grant.permission.id] = grant.permission

    for override in overrides:
        perm = override.permission
        if override.is_expired(now) or not perm.is_active:
            continue
        if override.granted:
            by_id[perm.id] = perm
        else:
            by_id.pop(perm.id, None)

    detailed = tuple(by_id.values())

    modules: dict[str, Module] = {}
    readable: dict[str, Module] = {}
    for perm in detailed:
        if perm.module is None:
            continue
        modules[perm.module.id] = perm.module
        if perm.action is Action.READ:
            readable[perm.module.id] = perm.module

    return EffectivePermissionSet(
        user_id=user_id,
        permission_names=frozenset(p.name for p in detailed),
        detailed=detailed,
        modules=tuple(modules.values()),
        accessible_modules=tuple(
            sorted(readable.values(), key=lambda m: (m.sort_order, m.name))
        ),
        roles=tuple(roles),
    )


class PermissionResolver:
    """Pulls a user's grants from a :class:`DataStoreGateway` and merges them.

    Missing relations (:class:`DataSourceUnavailable`) degrade the affected
    sub-query to an empty result; every other error propagates.
    """

    def __init__(
        self,
        gateway: DataStoreGateway,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._gateway = gateway
        self._clock = clock

    @property
    def gateway(self) -> DataStoreGateway:
        return self._gateway

    async def resolve(self, user_id: str) -> EffectivePermissionSet:
        (roles, grants), overrides = await asyncio.gather(
            self._role_grants(user_id),
            self._user_overrides(user_id),
        )
        result = merge_permissions(user_id, roles, grants, overrides, self._clock())
        logger.debug(
            "Resolved %d permissions across %d roles for user %s",
            len(result.permission_names),
            len(result.roles),
            user_id,
        )
        return result

    async def _role_grants(self, user_id: str) -> tuple[list[Role], list[RoleGrant]]:
        try:
            roles = [
                r
                for r in await self._gateway.fetch_active_roles_for_user(user_id)
                if r.is_active
            ]
        except DataSourceUnavailable as exc:
            logger.warning(
                "Roles unavailable for user %s (%s); "
                "continuing without role-based permissions",
                user_id,
                exc,
            )
            return [], []
        if not roles:
            return [], []

        try:
            grants = await self._gateway.fetch_role_grants([r.id for r in roles])
        except DataSourceUnavailable as exc:
            logger.warning(
                "Role permissions unavailable for user %s (%s); "
                "continuing without role-based permissions",
                user_id,
                exc,
            )
            grants = []
        return roles, grants

    async def _user_overrides(self, user_id: str) -> list[UserOverride]:
        try:
            return await self._gateway.fetch_user_overrides(user_id)
        except DataSourceUnavailable as exc:
            logger.warning(
                "User permission overrides unavailable for user %s (%s); "
                "continuing without them",
                user_id,
                exc,
            )
            return []
