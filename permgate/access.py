"""Access decisions over a session's current snapshot.

Every check is synchronous, never triggers a load and never raises: with
nothing loaded the answer is ``False`` (or empty).
"""

from __future__ import annotations

from typing import Iterable, Protocol

from permgate.types import Action, EffectivePermissionSet, Module, Permission, Role


class SnapshotSource(Protocol):
    """Anything exposing the current snapshot, e.g. a ``PermissionSession``."""

    @property
    def snapshot(self) -> EffectivePermissionSet | None: ...


class AccessDecisions:
    """Read-only query surface used by gating code.

    Each method reads ``source.snapshot`` exactly once, so a single call
    is answered from one complete load even while a refresh lands.
    """

    def __init__(self, source: SnapshotSource) -> None:
        self._source = source

    def has_permission(self, name: str) -> bool:
        snap = self._source.snapshot
        return snap is not None and name in snap.permission_names

    def has_any_permission(self, names: Iterable[str]) -> bool:
        snap = self._source.snapshot
        if snap is None:
            return False
        return any(n in snap.permission_names for n in names)

    def has_all_permissions(self, names: Iterable[str]) -> bool:
        snap = self._source.snapshot
        if snap is None:
            return False
        return all(n in snap.permission_names for n in names)

    def has_module_access(self, path: str) -> bool:
        snap = self._source.snapshot
        if snap is None:
            return False
        return any(m.path == path for m in snap.accessible_modules)

    def has_role(self, name: str) -> bool:
        snap = self._source.snapshot
        return snap is not None and any(r.name == name for r in snap.roles)

    def has_any_role(self, names: Iterable[str]) -> bool:
        snap = self._source.snapshot
        if snap is None:
            return False
        wanted = set(names)
        return any(r.name in wanted for r in snap.roles)

    # -------------------------------------------------------------- CRUD sugar

    def can(self, module_key: str, action: Action | str) -> bool:
        try:
            act = Action(action)
        except ValueError:
            return False
        return self.has_permission(f"{module_key}_{act.value}")

    def can_create(self, module_key: str) -> bool:
        return self.can(module_key, Action.CREATE)

    def can_read(self, module_key: str) -> bool:
        return self.can(module_key, Action.READ)

    def can_update(self, module_key: str) -> bool:
        return self.can(module_key, Action.UPDATE)

    def can_delete(self, module_key: str) -> bool:
        return self.can(module_key, Action.DELETE)

    def can_execute(self, module_key: str) -> bool:
        return self.can(module_key, Action.EXECUTE)

    # -------------------------------------------------------------- lookups

    def get_module_permissions(self, module_id: str) -> list[Permission]:
        snap = self._source.snapshot
        if snap is None:
            return []
        return [p for p in snap.detailed if p.module_id == module_id]

    def get_modules_by_path(self, prefix: str) -> list[Module]:
        snap = self._source.snapshot
        if snap is None:
            return []
        return [
            m
            for m in snap.accessible_modules
            if m.path is not None and m.path.startswith(prefix)
        ]

    def get_active_modules(self) -> list[Module]:
        snap = self._source.snapshot
        if snap is None:
            return []
        return [m for m in snap.accessible_modules if m.is_active]

    def roles(self) -> list[Role]:
        snap = self._source.snapshot
        return [] if snap is None else list(snap.roles)
