"""Memoized permission lookups and mutations with cache invalidation.

Where :class:`~permgate.session.PermissionSession` serves one signed-in
user, :class:`PermissionService` answers ad-hoc questions about *any*
user (admin screens, background jobs) through the shared
:class:`~permgate.cache.TTLCache`.

A lookup only writes its result back if the user was not invalidated
while it was being resolved, so a mutation is never undone by a
resolution that read the store before it.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Any

from permgate.cache import TTLCache
from permgate.errors import DataSourceError
from permgate.resolver import PermissionResolver
from permgate.session import SessionRegistry
from permgate.singleflight import SingleFlight
from permgate.tree import build_module_tree
from permgate.types import EffectivePermissionSet, Module, Permission

logger = logging.getLogger(__name__)

MODULES_TREE_KEY = "modules_tree"
ALL_PERMISSIONS_KEY = "all_permissions"


def _copy_tree(node: Module) -> Module:
    return dataclasses.replace(node, children=[_copy_tree(c) for c in node.children])


class PermissionService:
    def __init__(
        self,
        resolver: PermissionResolver,
        cache: TTLCache,
        registry: SessionRegistry | None = None,
        *,
        permissions_ttl: float = 30 * 60,
        check_ttl: float = 15 * 60,
    ) -> None:
        self._resolver = resolver
        self._cache = cache
        self._registry = registry
        self._permissions_ttl = permissions_ttl
        self._check_ttl = check_ttl
        self._flight: SingleFlight[EffectivePermissionSet] = SingleFlight()
        # Bumped by invalidate_user / invalidate_catalog.
        self._generations: dict[str, int] = {}
        self._catalog_generation = 0

    @property
    def cache(self) -> TTLCache:
        return self._cache

    async def _resolve(self, user_id: str) -> EffectivePermissionSet:
        return await self._flight.do(user_id, lambda: self._resolver.resolve(user_id))

    def _generation(self, user_id: str) -> int:
        return self._generations.get(user_id, 0)

    def _store(
        self, user_id: str, generation: int, key: str, value: Any, ttl: float
    ) -> None:
        if self._generation(user_id) != generation:
            logger.debug(
                "Not caching %s: user %s was invalidated during the lookup",
                key,
                user_id,
            )
            return
        self._cache.set(key, value, ttl)

    # ------------------------------------------------------------------ lists

    async def get_user_permissions(self, user_id: str) -> list[str]:
        """Sorted names of *user_id*'s effective permissions."""
        key = TTLCache.user_permissions_key(user_id)
        generation = self._generation(user_id)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)
        resolved = await self._resolve(user_id)
        names = sorted(resolved.permission_names)
        self._store(user_id, generation, key, tuple(names), self._permissions_ttl)
        return names

    async def get_user_detailed_permissions(self, user_id: str) -> list[Permission]:
        """Effective permissions with their module snapshots, sorted by name."""
        key = TTLCache.user_detailed_permissions_key(user_id)
        generation = self._generation(user_id)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)
        resolved = await self._resolve(user_id)
        detailed = tuple(sorted(resolved.detailed, key=lambda p: p.name))
        self._store(user_id, generation, key, detailed, self._permissions_ttl)
        return list(detailed)

    async def get_user_accessible_modules(self, user_id: str) -> list[Module]:
        key = TTLCache.user_modules_key(user_id)
        generation = self._generation(user_id)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)
        resolved = await self._resolve(user_id)
        self._store(
            user_id, generation, key, resolved.accessible_modules, self._permissions_ttl
        )
        return list(resolved.accessible_modules)

    # ------------------------------------------------------------------ catalog

    async def get_modules_tree(self) -> list[Module]:
        """Full navigation forest, independent of any user.

        Every call returns its own copy of the nodes; edits made by one
        caller never reach the cached tree.
        """
        cached = self._cache.get(MODULES_TREE_KEY)
        if cached is None:
            generation = self._catalog_generation
            cached = tuple(
                build_module_tree(await self._resolver.gateway.fetch_all_modules())
            )
            if generation == self._catalog_generation:
                self._cache.set(MODULES_TREE_KEY, cached, self._permissions_ttl)
        return [_copy_tree(m) for m in cached]

    async def get_all_permissions(self) -> list[Permission]:
        """Every active permission in the store, sorted by name."""
        cached = self._cache.get(ALL_PERMISSIONS_KEY)
        if cached is None:
            generation = self._catalog_generation
            cached = tuple(await self._resolver.gateway.fetch_all_permissions())
            if generation == self._catalog_generation:
                self._cache.set(ALL_PERMISSIONS_KEY, cached, self._permissions_ttl)
        return list(cached)

    def invalidate_catalog(self) -> None:
        """Forget the module tree and permission list after they change in the store."""
        self._catalog_generation += 1
        self._cache.invalidate(MODULES_TREE_KEY)
        self._cache.invalidate(ALL_PERMISSIONS_KEY)

    # ------------------------------------------------------------------ checks

    async def user_has_permission(self, user_id: str, permission: str) -> bool:
        """Memoized single-permission check; ``False`` when the store fails."""
        key = TTLCache.permission_check_key(user_id, permission)
        generation = self._generation(user_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        try:
            names = await self.get_user_permissions(user_id)
        except DataSourceError:
            logger.warning(
                "Permission check %s for user %s failed; denying",
                permission,
                user_id,
                exc_info=True,
            )
            return False
        allowed = permission in names
        self._store(user_id, generation, key, allowed, self._check_ttl)
        return allowed

    async def user_has_module_access(self, user_id: str, module_path: str) -> bool:
        """Memoized module-access check; ``False`` when the store fails."""
        key = TTLCache.module_access_key(user_id, module_path)
        generation = self._generation(user_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        try:
            modules = await self.get_user_accessible_modules(user_id)
        except DataSourceError:
            logger.warning(
                "Module access check %s for user %s failed; denying",
                module_path,
                user_id,
                exc_info=True,
            )
            return False
        allowed = any(m.path == module_path for m in modules)
        self._store(user_id, generation, key, allowed, self._check_ttl)
        return allowed

    # ------------------------------------------------------------------ mutations

    async def grant_user_permission(
        self,
        user_id: str,
        permission_id: str,
        *,
        granted: bool = True,
        assigned_by: str | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        await self._resolver.gateway.grant_user_permission(
            user_id,
            permission_id,
            granted=granted,
            assigned_by=assigned_by,
            expires_at=expires_at,
        )
        self.invalidate_user(user_id)

    async def revoke_user_permission(self, user_id: str, permission_id: str) -> None:
        await self._resolver.gateway.revoke_user_permission(user_id, permission_id)
        self.invalidate_user(user_id)

    async def assign_role(
        self, user_id: str, role_id: str, *, assigned_by: str | None = None
    ) -> None:
        await self._resolver.gateway.assign_role(
            user_id, role_id, assigned_by=assigned_by
        )
        self.invalidate_user(user_id)

    async def remove_role(self, user_id: str, role_id: str) -> None:
        await self._resolver.gateway.remove_role(user_id, role_id)
        self.invalidate_user(user_id)

    def invalidate_user(self, user_id: str) -> None:
        """Forget everything cached for *user_id* and mark their session stale."""
        self._generations[user_id] = self._generation(user_id) + 1
        self._flight.forget(user_id)
        removed = self._cache.invalidate_user_cache(user_id)
        if self._registry is not None:
            self._registry.invalidate(user_id)
        logger.debug("Invalidated %d cache entries for user %s", removed, user_id)
