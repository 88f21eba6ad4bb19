"""Async SQLAlchemy database layer and the SQL-backed gateway."""

from __future__ import annotations

import logging
import re
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from sqlalchemy import delete, or_, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from permgate.errors import DataSourceError, DataSourceUnavailable
from permgate.gateway import DataStoreGateway, GrantFilter, OverrideFilter
from permgate.models import (
    ModuleRow,
    PermissionRow,
    RolePermissionRow,
    RoleRow,
    UserPermissionRow,
    UserRoleRow,
)
from permgate.types import Action, Module, Permission, Role, RoleGrant, UserOverride

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Connection state
# ------------------------------------------------------------------

_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None

_NOT_CONFIGURED = "permgate database not configured; call db.configure(path) first"


def configure(db_path: Path, *, echo: bool = False) -> None:
    """Point the module at the SQLite file holding the RBAC tables."""
    global _engine, _sessions
    _engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", echo=echo)
    _sessions = async_sessionmaker(_engine, expire_on_commit=False)


def _require_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError(_NOT_CONFIGURED)
    return _engine


@asynccontextmanager
async def session() -> AsyncIterator[AsyncSession]:
    """One unit of work: committed on clean exit, rolled back on error."""
    if _sessions is None:
        raise RuntimeError(_NOT_CONFIGURED)
    async with _sessions() as sess:
        yield sess
        await sess.commit()


# ------------------------------------------------------------------
# Migrations
# ------------------------------------------------------------------

_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "alembic"

# Tables of revision 0001.  Finding them without an alembic_version row
# means the schema was laid down by other tooling.
_BASE_TABLES = frozenset(
    {"roles", "modules", "permissions", "role_permissions", "user_roles"}
)


def _migrate(connection: Any, revision: str) -> None:
    """Bring the schema on *connection* to *revision* (runs under ``run_sync``)."""
    from sqlalchemy import inspect as sa_inspect

    from alembic import command
    from alembic.config import Config
    from alembic.migration import MigrationContext

    cfg = Config()
    cfg.set_main_option("script_location", str(_MIGRATIONS_DIR))
    cfg.attributes["connection"] = connection

    current = MigrationContext.configure(connection).get_current_revision()
    if current is None:
        existing = set(sa_inspect(connection).get_table_names())
        if _BASE_TABLES <= existing:
            current = "head" if "user_permissions" in existing else "0001"
            logger.info("Adopting existing RBAC schema at revision %s", current)
            command.stamp(cfg, current)
            if current == "head":
                return

    logger.debug("Migrating permission schema from %s to %s", current, revision)
    command.upgrade(cfg, revision)


async def init_db(revision: str = "head") -> None:
    """Create or upgrade the RBAC tables up to *revision*."""
    async with _require_engine().begin() as conn:
        await conn.execute(text("PRAGMA journal_mode=WAL"))
        await conn.run_sync(_migrate, revision)


async def dispose() -> None:
    """Close pooled connections and forget the configured database."""
    global _engine, _sessions
    engine, _engine, _sessions = _engine, None, None
    if engine is not None:
        await engine.dispose()


# ------------------------------------------------------------------
# Row -> domain conversion
# ------------------------------------------------------------------

_NO_SUCH_TABLE_RE = re.compile(r"no such table: (\S+)")
_PG_UNDEFINED_TABLE = "42P01"


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_role(row: RoleRow) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description,
        is_active=row.is_active,
        is_default=row.is_default,
    )


def _to_module(row: ModuleRow) -> Module:
    return Module(
        id=row.id,
        name=row.name,
        description=row.description,
        path=row.path,
        icon=row.icon,
        is_active=row.is_active,
        parent_id=row.parent_id,
        sort_order=row.sort_order,
    )


def _to_permission(row: PermissionRow, module: ModuleRow | None) -> Permission:
    return Permission(
        id=row.id,
        name=row.name,
        action=Action(row.action),
        description=row.description,
        module_id=row.module_id,
        is_active=row.is_active,
        module=_to_module(module) if module is not None else None,
    )


def _classify(exc: SQLAlchemyError, operation: str) -> DataSourceError:
    """Map a driver error onto the engine's error taxonomy."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code == _PG_UNDEFINED_TABLE:
        return DataSourceUnavailable(str(orig), operation=operation)
    # sqlite3 reports a missing table as a generic SQLITE_ERROR, so the
    # message is the only signal available.
    if isinstance(exc, OperationalError):
        m = _NO_SUCH_TABLE_RE.search(str(orig))
        if m:
            return DataSourceUnavailable(
                str(orig), relation=m.group(1), operation=operation
            )
    return DataSourceError(str(exc), operation=operation)


# ------------------------------------------------------------------
# Gateway
# ------------------------------------------------------------------


class SqlDataStore(DataStoreGateway):
    """:class:`DataStoreGateway` backed by the SQLAlchemy models."""

    def __init__(
        self,
        session_factory: Callable[
            [], AbstractAsyncContextManager[AsyncSession]
        ] = session,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session = session_factory
        self._clock = clock

    @asynccontextmanager
    async def _query(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session() as sess:
                yield sess
        except SQLAlchemyError as exc:
            err = _classify(exc, operation)
            if not isinstance(err, DataSourceUnavailable):
                logger.error("Query %s failed: %s", operation, exc)
            raise err from exc

    # -------------------------------------------------------------- reads

    async def fetch_active_roles_for_user(self, user_id: str) -> list[Role]:
        async with self._query("fetch_active_roles_for_user") as sess:
            stmt = (
                select(RoleRow)
                .join(UserRoleRow, UserRoleRow.role_id == RoleRow.id)
                .where(
                    UserRoleRow.user_id == user_id,
                    UserRoleRow.is_active.is_(True),
                    RoleRow.is_active.is_(True),
                )
                .order_by(RoleRow.name)
            )
            result = await sess.execute(stmt)
            return [_to_role(r) for r in result.scalars().all()]

    async def fetch_role_grants(self, role_ids: list[str]) -> list[RoleGrant]:
        if not role_ids:
            return []
        return await self.query_grants(GrantFilter(role_ids=tuple(role_ids)))

    async def query_grants(self, flt: GrantFilter) -> list[RoleGrant]:
        flt.validate()
        async with self._query("fetch_role_grants") as sess:
            stmt = (
                select(
                    RolePermissionRow.role_id,
                    RolePermissionRow.granted,
                    PermissionRow,
                    ModuleRow,
                )
                .join(PermissionRow, PermissionRow.id == RolePermissionRow.permission_id)
                .outerjoin(ModuleRow, ModuleRow.id == PermissionRow.module_id)
                .where(RolePermissionRow.role_id.in_(flt.role_ids))
                .order_by(RolePermissionRow.role_id, PermissionRow.name)
            )
            if not flt.include_revoked:
                stmt = stmt.where(RolePermissionRow.granted.is_(True))
            result = await sess.execute(stmt)
            return [
                RoleGrant(
                    role_id=role_id,
                    permission=_to_permission(perm, module),
                    granted=granted,
                )
                for role_id, granted, perm, module in result.all()
            ]

    async def fetch_user_overrides(self, user_id: str) -> list[UserOverride]:
        return await self.query_overrides(
            OverrideFilter(user_id=user_id, active_at=self._clock())
        )

    async def query_overrides(self, flt: OverrideFilter) -> list[UserOverride]:
        flt.validate()
        async with self._query("fetch_user_overrides") as sess:
            stmt = (
                select(
                    UserPermissionRow.granted,
                    UserPermissionRow.expires_at,
                    PermissionRow,
                    ModuleRow,
                )
                .join(PermissionRow, PermissionRow.id == UserPermissionRow.permission_id)
                .outerjoin(ModuleRow, ModuleRow.id == PermissionRow.module_id)
                .where(UserPermissionRow.user_id == flt.user_id)
                .order_by(UserPermissionRow.assigned_at, UserPermissionRow.id)
            )
            if flt.active_at is not None:
                active_at = flt.active_at.astimezone(timezone.utc)
                stmt = stmt.where(
                    or_(
                        UserPermissionRow.expires_at.is_(None),
                        UserPermissionRow.expires_at > active_at,
                    )
                )
            result = await sess.execute(stmt)
            return [
                UserOverride(
                    user_id=flt.user_id,
                    permission=_to_permission(perm, module),
                    granted=granted,
                    expires_at=_as_utc(expires_at),
                )
                for granted, expires_at, perm, module in result.all()
            ]

    async def fetch_all_modules(self) -> list[Module]:
        async with self._query("fetch_all_modules") as sess:
            stmt = (
                select(ModuleRow)
                .where(ModuleRow.is_active.is_(True))
                .order_by(ModuleRow.sort_order, ModuleRow.name)
            )
            result = await sess.execute(stmt)
            return [_to_module(r) for r in result.scalars().all()]

    async def fetch_default_role(self) -> Role | None:
        async with self._query("fetch_default_role") as sess:
            stmt = (
                select(RoleRow)
                .where(RoleRow.is_default.is_(True), RoleRow.is_active.is_(True))
                .limit(1)
            )
            result = await sess.execute(stmt)
            row = result.scalars().first()
            return None if row is None else _to_role(row)

    async def fetch_all_permissions(self) -> list[Permission]:
        async with self._query("fetch_all_permissions") as sess:
            stmt = (
                select(PermissionRow, ModuleRow)
                .outerjoin(ModuleRow, ModuleRow.id == PermissionRow.module_id)
                .where(PermissionRow.is_active.is_(True))
                .order_by(PermissionRow.name)
            )
            result = await sess.execute(stmt)
            return [_to_permission(perm, module) for perm, module in result.all()]

    # -------------------------------------------------------------- writes

    async def grant_user_permission(
        self,
        user_id: str,
        permission_id: str,
        *,
        granted: bool = True,
        assigned_by: str | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        now = self._clock()
        async with self._query("grant_user_permission") as sess:
            stmt = sqlite_insert(UserPermissionRow).values(
                user_id=user_id,
                permission_id=permission_id,
                granted=granted,
                assigned_by=assigned_by,
                assigned_at=now,
                expires_at=_as_utc(expires_at),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[UserPermissionRow.user_id, UserPermissionRow.permission_id],
                set_={
                    "granted": stmt.excluded.granted,
                    "assigned_by": stmt.excluded.assigned_by,
                    "assigned_at": stmt.excluded.assigned_at,
                    "expires_at": stmt.excluded.expires_at,
                },
            )
            await sess.execute(stmt)

    async def revoke_user_permission(self, user_id: str, permission_id: str) -> None:
        async with self._query("revoke_user_permission") as sess:
            await sess.execute(
                delete(UserPermissionRow).where(
                    UserPermissionRow.user_id == user_id,
                    UserPermissionRow.permission_id == permission_id,
                )
            )

    async def assign_role(
        self, user_id: str, role_id: str, *, assigned_by: str | None = None
    ) -> None:
        now = self._clock()
        async with self._query("assign_role") as sess:
            stmt = sqlite_insert(UserRoleRow).values(
                user_id=user_id,
                role_id=role_id,
                is_active=True,
                assigned_by=assigned_by,
                assigned_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[UserRoleRow.user_id, UserRoleRow.role_id],
                set_={
                    "is_active": True,
                    "assigned_by": stmt.excluded.assigned_by,
                    "assigned_at": stmt.excluded.assigned_at,
                },
            )
            await sess.execute(stmt)

    async def remove_role(self, user_id: str, role_id: str) -> None:
        async with self._query("remove_role") as sess:
            await sess.execute(
                update(UserRoleRow)
                .where(UserRoleRow.user_id == user_id, UserRoleRow.role_id == role_id)
                .values(is_active=False)
            )
