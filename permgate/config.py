"""Configuration for the permission engine.

Settings come from a TOML file when one is available, otherwise from
``PERMGATE_*`` environment variables::

    [engine]
    session_ttl = 1800            # seconds a loaded session stays fresh
    resolve_timeout = 10          # seconds before a resolution is abandoned
    permissions_cache_ttl = 1800  # memoized permission / module lists
    check_cache_ttl = 900         # memoized single permission / module checks
    cache_max_size = 10000

    [database]
    path = "permgate.sqlite3"
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class EngineConfig:
    session_ttl: float = 30 * 60
    resolve_timeout: float = 10.0
    permissions_cache_ttl: float = 30 * 60
    check_cache_ttl: float = 15 * 60
    cache_max_size: int = 10_000
    db_path: Path = Path("permgate.sqlite3")

    def __post_init__(self) -> None:
        for f in fields(self):
            if f.name == "db_path":
                continue
            value = getattr(self, f.name)
            if value <= 0:
                raise ValueError(f"{f.name} must be positive, got {value!r}")


_ENGINE_KEYS = {
    "session_ttl": float,
    "resolve_timeout": float,
    "permissions_cache_ttl": float,
    "check_cache_ttl": float,
    "cache_max_size": int,
}


class ConfigManager:
    """Loads an :class:`EngineConfig` from TOML.

    Typical usage::

        cfg = ConfigManager.from_file(Path("config.toml")).engine_config
    """

    def __init__(self, engine_config: EngineConfig) -> None:
        self._engine = engine_config

    @classmethod
    def from_file(cls, path: Path) -> ConfigManager:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
        return cls._from_dict(raw, base_dir=path.resolve().parent)

    @classmethod
    def from_str(cls, toml_str: str) -> ConfigManager:
        """Load configuration from a TOML string (handy for tests)."""
        return cls._from_dict(tomllib.loads(toml_str))

    @classmethod
    def _from_dict(
        cls, raw: dict[str, Any], base_dir: Path | None = None
    ) -> ConfigManager:
        engine = raw.get("engine", {})
        if not isinstance(engine, dict):
            raise ValueError("[engine] must be a table")
        unknown = set(engine) - set(_ENGINE_KEYS)
        if unknown:
            raise ValueError(f"Unknown [engine] settings: {', '.join(sorted(unknown))}")

        kwargs: dict[str, Any] = {
            key: conv(engine[key]) for key, conv in _ENGINE_KEYS.items() if key in engine
        }

        database = raw.get("database", {})
        if "path" in database:
            db_path = Path(str(database["path"]))
            # relative paths are relative to the config file, not the cwd
            if base_dir is not None and not db_path.is_absolute():
                db_path = base_dir / db_path
            kwargs["db_path"] = db_path

        return cls(EngineConfig(**kwargs))

    @classmethod
    def default(cls) -> ConfigManager:
        return cls(EngineConfig())

    @property
    def engine_config(self) -> EngineConfig:
        return self._engine


def _resolve_config_path() -> Path | None:
    """``PERMGATE_CONF`` may name a file or a directory holding ``config.toml``."""
    raw = os.environ.get("PERMGATE_CONF", "")
    if not raw:
        return None
    p = Path(raw)
    if p.is_dir():
        p = p / "config.toml"
    return p if p.exists() else None


def load_config() -> EngineConfig:
    """Build an ``EngineConfig`` from the environment.

    Environment variables
    ---------------------
    PERMGATE_CONF                  : TOML file (or directory with config.toml); wins when present
    PERMGATE_SESSION_TTL           : seconds (default: 1800)
    PERMGATE_RESOLVE_TIMEOUT       : seconds (default: 10)
    PERMGATE_PERMISSIONS_CACHE_TTL : seconds (default: 1800)
    PERMGATE_CHECK_CACHE_TTL       : seconds (default: 900)
    PERMGATE_CACHE_MAX_SIZE        : entries (default: 10000)
    PERMGATE_DB_PATH               : SQLite file (default: permgate.sqlite3)
    """
    path = _resolve_config_path()
    if path is not None:
        return ConfigManager.from_file(path).engine_config

    kwargs: dict[str, Any] = {}
    for key, conv in _ENGINE_KEYS.items():
        raw = os.environ.get(f"PERMGATE_{key.upper()}")
        if raw:
            kwargs[key] = conv(raw)
    db_path = os.environ.get("PERMGATE_DB_PATH")
    if db_path:
        kwargs["db_path"] = Path(db_path)
    return EngineConfig(**kwargs)
