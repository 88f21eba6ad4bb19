"""HTTP surface for the permission engine."""

from __future__ import annotations

from permgate.api.dependencies import current_session, get_engine, require_permission
from permgate.api.routes import router

__all__ = [
    "current_session",
    "get_engine",
    "require_permission",
    "router",
]
