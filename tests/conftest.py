"""Shared fixtures for the permgate test suite."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime
from pathlib import Path

import pytest
import pytest_asyncio

from permgate import db
from permgate.gateway import DataStoreGateway
from permgate.resolver import PermissionResolver
from permgate.types import Action, Module, Permission, Role, RoleGrant, UserOverride

# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_module(
    id: str,
    name: str | None = None,
    *,
    path: str | None = None,
    parent_id: str | None = None,
    sort_order: int = 0,
    is_active: bool = True,
) -> Module:
    return Module(
        id=id,
        name=name or id,
        path=path if path is not None else f"/{id}",
        parent_id=parent_id,
        sort_order=sort_order,
        is_active=is_active,
    )


def make_permission(
    name: str,
    action: Action | str = Action.READ,
    *,
    module: Module | None = None,
    id: str | None = None,
    is_active: bool = True,
) -> Permission:
    return Permission(
        id=id or f"p-{name}",
        name=name,
        action=Action(action),
        module_id=module.id if module is not None else None,
        module=module,
        is_active=is_active,
    )


class FakeClock:
    """Manually advanced stand-in for ``time.monotonic``."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# In-memory gateway
# ---------------------------------------------------------------------------


class FakeGateway(DataStoreGateway):
    """Dict-backed gateway with call counters and injectable failures.

    ``failures`` maps an operation name (``roles``, ``grants``,
    ``overrides``, ``modules``, ``permissions``) to the exception it
    should raise.  When ``gate`` is set every read waits on it first.
    """

    def __init__(self) -> None:
        self.roles: dict[str, list[Role]] = {}
        self.grants: list[RoleGrant] = []
        self.overrides: dict[str, list[UserOverride]] = {}
        self.modules: list[Module] = []
        self.permissions: dict[str, Permission] = {}
        self.calls: Counter[str] = Counter()
        self.failures: dict[str, BaseException] = {}
        self.gate: asyncio.Event | None = None

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.gate is not None:
            await self.gate.wait()
        exc = self.failures.get(operation)
        if exc is not None:
            raise exc

    # -- setup helpers --

    def give_role(self, user_id: str, role: Role, *permissions: Permission) -> None:
        self.roles.setdefault(user_id, []).append(role)
        for perm in permissions:
            self.permissions[perm.id] = perm
            self.grants.append(RoleGrant(role_id=role.id, permission=perm))

    def add_override(
        self,
        user_id: str,
        permission: Permission,
        granted: bool = True,
        expires_at: datetime | None = None,
    ) -> None:
        self.permissions[permission.id] = permission
        self.overrides.setdefault(user_id, []).append(
            UserOverride(
                user_id=user_id,
                permission=permission,
                granted=granted,
                expires_at=expires_at,
            )
        )

    # -- reads --

    async def fetch_active_roles_for_user(self, user_id: str) -> list[Role]:
        await self._enter("roles")
        return list(self.roles.get(user_id, []))

    async def fetch_role_grants(self, role_ids: list[str]) -> list[RoleGrant]:
        await self._enter("grants")
        return [g for g in self.grants if g.role_id in role_ids]

    async def fetch_user_overrides(self, user_id: str) -> list[UserOverride]:
        await self._enter("overrides")
        return list(self.overrides.get(user_id, []))

    async def fetch_all_modules(self) -> list[Module]:
        await self._enter("modules")
        return list(self.modules)

    async def fetch_all_permissions(self) -> list[Permission]:
        await self._enter("permissions")
        return sorted(
            (p for p in self.permissions.values() if p.is_active), key=lambda p: p.name
        )

    # -- writes --

    async def grant_user_permission(
        self,
        user_id: str,
        permission_id: str,
        *,
        granted: bool = True,
        assigned_by: str | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        self.calls["grant_user_permission"] += 1
        await self.revoke_user_permission(user_id, permission_id)
        self.add_override(user_id, self.permissions[permission_id], granted, expires_at)

    async def revoke_user_permission(self, user_id: str, permission_id: str) -> None:
        self.calls["revoke_user_permission"] += 1
        self.overrides[user_id] = [
            o for o in self.overrides.get(user_id, []) if o.permission.id != permission_id
        ]

    async def remove_role(self, user_id: str, role_id: str) -> None:
        self.calls["remove_role"] += 1
        self.roles[user_id] = [r for r in self.roles.get(user_id, []) if r.id != role_id]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

EDITOR = Role(id="r-editor", name="editor")
DOCS = make_module("docs", "Documents", path="/docs", sort_order=2)
REPORTS = make_module("reports", "Reports", path="/reports", sort_order=1)
DOCS_READ = make_permission("docs_read", Action.READ, module=DOCS)
DOCS_UPDATE = make_permission("docs_update", Action.UPDATE, module=DOCS)
REPORTS_READ = make_permission("reports_read", Action.READ, module=REPORTS)


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def editor_gateway() -> FakeGateway:
    """User ``u1`` is an editor with ``docs_update`` revoked and ``reports_read`` granted."""
    gw = FakeGateway()
    gw.give_role("u1", EDITOR, DOCS_READ, DOCS_UPDATE)
    gw.add_override("u1", DOCS_UPDATE, granted=False)
    gw.add_override("u1", REPORTS_READ, granted=True)
    return gw


@pytest.fixture()
def resolver(editor_gateway: FakeGateway) -> PermissionResolver:
    return PermissionResolver(editor_gateway)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# SQLite database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def initialized_db(tmp_path: Path):
    """Fresh SQLite database migrated to head."""
    db.configure(tmp_path / "permgate.sqlite3")
    await db.init_db()
    yield tmp_path
    await db.dispose()


@pytest_asyncio.fixture()
async def partial_db(tmp_path: Path):
    """Database migrated only to 0001: no ``user_permissions`` table."""
    db.configure(tmp_path / "partial.sqlite3")
    await db.init_db(revision="0001")
    yield tmp_path
    await db.dispose()
