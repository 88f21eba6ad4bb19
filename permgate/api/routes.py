"""HTTP routes exposing the session cache and access decisions."""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from permgate.access import AccessDecisions
from permgate.api.dependencies import get_engine, load_error_to_http, require_permission
from permgate.errors import DataSourceError
from permgate.session import PermissionSession
from permgate.types import Module

router = APIRouter(prefix="/api", tags=["permissions"])


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _session_payload(session: PermissionSession) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "user_id": session.user_id,
        "state": session.state.value,
        "loaded": session.is_loaded,
        "stale": session.is_loaded and session.is_permission_expired(),
        "error": str(session.error) if session.error is not None else None,
        "permissions": [],
        "roles": [],
        "modules": [],
    }
    if session.snapshot is not None:
        payload.update(session.snapshot.summary())
    return payload


def _module_payload(module: Module) -> dict[str, Any]:
    return {
        "id": module.id,
        "name": module.name,
        "path": module.path,
        "icon": module.icon,
        "sort_order": module.sort_order,
        "children": [_module_payload(c) for c in module.children],
    }


def _existing_session(request: Request, user_id: str) -> PermissionSession:
    session = get_engine(request).registry.get(user_id)
    if session is None:
        raise HTTPException(status_code=404, detail="No session for user")
    return session


# ------------------------------------------------------------------
# Routes
# ------------------------------------------------------------------


@router.post("/sessions/{user_id}")
async def open_session(
    request: Request, user_id: str, force: bool = False
) -> dict[str, Any]:
    """Sign-in: create the user's session and load it."""
    session = get_engine(request).registry.open(user_id)
    try:
        await session.load_user_permissions(user_id, force_reload=force)
    except DataSourceError as exc:
        if not session.is_loaded:
            raise load_error_to_http(exc) from exc
    return _session_payload(session)


@router.post("/sessions/{user_id}/refresh")
async def refresh_session(request: Request, user_id: str) -> dict[str, Any]:
    session = _existing_session(request, user_id)
    try:
        await session.refresh_if_needed(user_id)
    except DataSourceError as exc:
        if not session.is_loaded:
            raise load_error_to_http(exc) from exc
    return _session_payload(session)


@router.delete("/sessions/{user_id}", status_code=204)
async def close_session(request: Request, user_id: str) -> Response:
    """Sign-out: drop the user's session."""
    get_engine(request).registry.close(user_id)
    return Response(status_code=204)


@router.get("/sessions/{user_id}")
async def get_session(request: Request, user_id: str) -> dict[str, Any]:
    return _session_payload(_existing_session(request, user_id))


@router.get("/sessions/{user_id}/check")
async def check_permissions(
    request: Request,
    user_id: str,
    permission: list[str] = Query(...),
    mode: Literal["any", "all"] = "all",
) -> dict[str, Any]:
    decisions = AccessDecisions(_existing_session(request, user_id))
    if mode == "any":
        allowed = decisions.has_any_permission(permission)
    else:
        allowed = decisions.has_all_permissions(permission)
    return {"allowed": allowed}


@router.get("/sessions/{user_id}/modules/access")
async def check_module_access(
    request: Request, user_id: str, path: str
) -> dict[str, Any]:
    decisions = AccessDecisions(_existing_session(request, user_id))
    return {"allowed": decisions.has_module_access(path)}


@router.get("/modules/tree")
async def modules_tree(
    request: Request,
    _session: PermissionSession = Depends(require_permission("modules_read")),
) -> list[dict[str, Any]]:
    service = get_engine(request).service
    try:
        tree = await service.get_modules_tree()
    except DataSourceError as exc:
        raise load_error_to_http(exc) from exc
    return [_module_payload(m) for m in tree]
