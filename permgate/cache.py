"""TTL cache for memoized permission lookups.

Keys are flat strings such as ``user_permissions_{user_id}`` or
``permission_check_{user_id}_{permission}`` so a whole user can be
dropped with one pattern sweep.  Each entry carries its own TTL and is
lazily evicted when read after expiry.
"""

from __future__ import annotations

import re
import time
from threading import Lock
from typing import Any, Callable

_USER_KEY_FAMILIES = (
    "user_permissions",
    "user_detailed_permissions",
    "user_modules",
    "permission_check",
    "module_access",
)


class TTLCache:
    """Thread-safe, bounded key/value cache with per-entry expiry."""

    def __init__(
        self,
        default_ttl: float = 1800,
        max_size: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl
        self._max_size = max_size
        self._clock = clock
        # key -> (value, stored_at, ttl)
        self._cache: dict[str, tuple[Any, float, float]] = {}
        self._lock = Lock()

    # ------------------------------------------------------------------ keys

    @staticmethod
    def user_permissions_key(user_id: str) -> str:
        return f"user_permissions_{user_id}"

    @staticmethod
    def user_detailed_permissions_key(user_id: str) -> str:
        return f"user_detailed_permissions_{user_id}"

    @staticmethod
    def user_modules_key(user_id: str) -> str:
        return f"user_modules_{user_id}"

    @staticmethod
    def permission_check_key(user_id: str, permission: str) -> str:
        return f"permission_check_{user_id}_{permission}"

    @staticmethod
    def module_access_key(user_id: str, module_path: str) -> str:
        return f"module_access_{user_id}_{module_path}"

    # ------------------------------------------------------------------ API

    def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` on miss / expiry."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            value, stored_at, ttl = entry
            if self._clock() - stored_at > ttl:
                del self._cache[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store *value* under *key*, replacing any previous entry."""
        with self._lock:
            if key not in self._cache and len(self._cache) >= self._max_size:
                self._evict_expired()
            self._cache[key] = (
                value,
                self._clock(),
                self._default_ttl if ttl is None else ttl,
            )

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def invalidate_pattern(self, pattern: str | re.Pattern[str]) -> int:
        """Drop every key matching *pattern* (``re.search`` semantics).

        Returns the number of entries removed.
        """
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        with self._lock:
            keys = [k for k in self._cache if regex.search(k)]
            for k in keys:
                del self._cache[k]
        return len(keys)

    def invalidate_user_cache(self, user_id: str) -> int:
        """Drop every per-user key family for *user_id*.

        The id must be followed by the end of the key or ``_`` so that
        ``u1`` does not also sweep ``u10``.
        """
        families = "|".join(_USER_KEY_FAMILIES)
        return self.invalidate_pattern(
            rf"^(?:{families})_{re.escape(user_id)}(?:$|_)"
        )

    def clear(self) -> None:
        """Drop every cached entry."""
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    # ------------------------------------------------------------------ internal

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [
            k for k, (_, stored_at, ttl) in self._cache.items() if now - stored_at > ttl
        ]
        for k in expired:
            del self._cache[k]
