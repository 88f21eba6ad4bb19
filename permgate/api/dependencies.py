"""FastAPI dependencies for principal lookup and permission gating."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from fastapi import Depends, HTTPException, Request

from permgate.access import AccessDecisions
from permgate.errors import DataSourceError, ResolutionTimeout
from permgate.session import PermissionSession

if TYPE_CHECKING:
    from permgate.app import EngineState

logger = logging.getLogger(__name__)

USER_ID_HEADER = "x-user-id"


def get_engine(request: Request) -> "EngineState":
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Permission engine not ready")
    return engine


def load_error_to_http(exc: DataSourceError) -> HTTPException:
    """Translate a failed load into the response the caller should see."""
    if isinstance(exc, ResolutionTimeout):
        return HTTPException(status_code=504, detail="Permission resolution timed out")
    return HTTPException(
        status_code=503, detail="Permission data temporarily unavailable"
    )


async def current_session(request: Request) -> PermissionSession:
    """Return the caller's session, loading or refreshing it as needed.

    The principal is the already-authenticated user id carried in the
    ``X-User-Id`` header.  Callers without a signed-in session get a
    one-request session that is not kept in the registry.  A failed
    refresh with an earlier snapshot still available keeps serving that
    snapshot.
    """
    user_id = request.headers.get(USER_ID_HEADER, "").strip()
    if not user_id:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": 'Bearer realm="permgate"'},
        )

    registry = get_engine(request).registry
    session = registry.get(user_id) or registry.transient(user_id)
    try:
        await session.refresh_if_needed(user_id)
    except DataSourceError as exc:
        if not session.is_loaded:
            raise load_error_to_http(exc) from exc
        logger.warning("Serving stale permissions for user %s", user_id)
    return session


def require_permission(
    *names: str, require_all: bool = True
) -> Callable[..., Awaitable[PermissionSession]]:
    """Build a dependency that admits callers holding *names*.

    With ``require_all=False`` any one of the names is enough.  Denied
    callers get **403**.
    """
    if not names:
        raise ValueError("require_permission needs at least one permission name")

    async def _dependency(
        session: PermissionSession = Depends(current_session),
    ) -> PermissionSession:
        decisions = AccessDecisions(session)
        if require_all:
            allowed = decisions.has_all_permissions(names)
        else:
            allowed = decisions.has_any_permission(names)
        if not allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        return session

    return _dependency
