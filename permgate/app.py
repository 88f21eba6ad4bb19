"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import anyio
from fastapi import FastAPI

from permgate import db
from permgate.api import router
from permgate.cache import TTLCache
from permgate.config import EngineConfig, load_config
from permgate.gateway import DataStoreGateway
from permgate.resolver import PermissionResolver
from permgate.service import PermissionService
from permgate.session import SessionRegistry


@dataclass
class EngineState:
    """Everything the routes need, built once per application."""

    config: EngineConfig
    cache: TTLCache
    registry: SessionRegistry
    service: PermissionService


def build_engine(gateway: DataStoreGateway, config: EngineConfig) -> EngineState:
    resolver = PermissionResolver(gateway)
    cache = TTLCache(
        default_ttl=config.permissions_cache_ttl, max_size=config.cache_max_size
    )
    registry = SessionRegistry(
        resolver, ttl=config.session_ttl, resolve_timeout=config.resolve_timeout
    )
    service = PermissionService(
        resolver,
        cache,
        registry,
        permissions_ttl=config.permissions_cache_ttl,
        check_ttl=config.check_cache_ttl,
    )
    return EngineState(config=config, cache=cache, registry=registry, service=service)


def create_app(
    gateway: DataStoreGateway | None = None,
    config: EngineConfig | None = None,
) -> FastAPI:
    """Build the app.

    With a *gateway* the engine is wired immediately.  Without one the
    lifespan opens the SQLite database named by the config, migrates it
    and uses :class:`~permgate.db.SqlDataStore`.
    """
    cfg = config if config is not None else load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owns_db = getattr(app.state, "engine", None) is None
        if owns_db:
            await anyio.Path(cfg.db_path.parent).mkdir(parents=True, exist_ok=True)
            db.configure(cfg.db_path)
            await db.init_db()
            app.state.engine = build_engine(db.SqlDataStore(), cfg)
        try:
            yield
        finally:
            app.state.engine.registry.close_all()
            if owns_db:
                await db.dispose()

    app = FastAPI(title="permgate", lifespan=lifespan)
    if gateway is not None:
        app.state.engine = build_engine(gateway, cfg)
    app.include_router(router)
    return app
