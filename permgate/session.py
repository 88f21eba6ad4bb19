"""Per-user permission session cache.

A :class:`PermissionSession` holds the resolved
:class:`~permgate.types.EffectivePermissionSet` for one signed-in user.
Lifecycle::

    UNLOADED --load--> LOADING --ok--> LOADED (fresh) --ttl--> LOADED (stale)
        ^                 |                                        |
        |                 +--error--> previous state               |
        +----------------------- clear_permissions() --------------+

Only :meth:`PermissionSession.load_user_permissions` and
:meth:`PermissionSession.refresh_if_needed` do I/O.  The snapshot is
immutable and replaced in a single assignment, so readers see either
the previous complete load or the new one.

:class:`SessionRegistry` owns one session per user id and is what the
application keeps around between requests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable

from permgate.errors import ResolutionTimeout
from permgate.resolver import PermissionResolver
from permgate.singleflight import SingleFlight
from permgate.types import EffectivePermissionSet

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 30 * 60  # seconds
DEFAULT_RESOLVE_TIMEOUT = 10.0  # seconds


class LoadState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"


class PermissionSession:
    """Session-scoped cache of one user's effective permissions."""

    def __init__(
        self,
        resolver: PermissionResolver,
        user_id: str,
        *,
        ttl: float = DEFAULT_SESSION_TTL,
        resolve_timeout: float = DEFAULT_RESOLVE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not user_id:
            raise ValueError("PermissionSession needs a user id")
        self._resolver = resolver
        self._user_id = user_id
        self._ttl = ttl
        self._resolve_timeout = resolve_timeout
        self._clock = clock

        self._snapshot: EffectivePermissionSet | None = None
        self._last_load_time: float | None = None
        self._error: BaseException | None = None
        # Bumped by clear/invalidate; a load only commits if it still matches.
        self._generation = 0
        self._flight: SingleFlight[None] = SingleFlight()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------ state

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def snapshot(self) -> EffectivePermissionSet | None:
        return self._snapshot

    @property
    def is_loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def loading(self) -> bool:
        return self._flight.in_flight(self._user_id)

    @property
    def error(self) -> BaseException | None:
        """The failure of the most recent load attempt, if it failed."""
        return self._error

    @property
    def last_load_time(self) -> float | None:
        return self._last_load_time

    @property
    def state(self) -> LoadState:
        if self.loading:
            return LoadState.LOADING
        if self._snapshot is not None:
            return LoadState.LOADED
        return LoadState.UNLOADED

    def is_permission_expired(self) -> bool:
        if self._last_load_time is None:
            return True
        return self._clock() - self._last_load_time > self._ttl

    # ------------------------------------------------------------------ loading

    async def load_user_permissions(
        self, user_id: str, force_reload: bool = False
    ) -> None:
        """Resolve and cache *user_id*'s permissions.

        Returns immediately when a fresh snapshot exists and
        *force_reload* is false.  Joins the load already in flight
        instead of starting a second one.  Re-raises the failure of the
        load it ran or joined; the previous snapshot is kept in that case.
        """
        self._check_principal(user_id)
        async with self._lock:
            if (
                not force_reload
                and self._snapshot is not None
                and not self.is_permission_expired()
            ):
                return
            generation = self._generation
            task = self._flight.start(user_id, lambda: self._load(generation))
        await asyncio.shield(task)

    async def refresh_if_needed(self, user_id: str) -> None:
        """Reload when nothing is loaded yet or the snapshot is past its TTL."""
        self._check_principal(user_id)
        if self._snapshot is None or self.is_permission_expired():
            await self.load_user_permissions(user_id, force_reload=True)

    async def _load(self, generation: int) -> None:
        user_id = self._user_id
        try:
            snapshot = await asyncio.wait_for(
                self._resolver.resolve(user_id), timeout=self._resolve_timeout
            )
        except asyncio.TimeoutError:
            logger.error(
                "Permission resolution for user %s timed out after %ss",
                user_id,
                self._resolve_timeout,
            )
            err = ResolutionTimeout(user_id, self._resolve_timeout)
            self._record_failure(generation, err)
            raise err from None
        except Exception as exc:
            logger.exception("Failed to load permissions for user %s", user_id)
            self._record_failure(generation, exc)
            raise

        if generation != self._generation:
            logger.debug(
                "Discarding permission load for user %s: invalidated while in flight",
                user_id,
            )
            return

        self._snapshot = snapshot
        self._last_load_time = self._clock()
        self._error = None
        logger.debug(
            "Loaded %d permissions for user %s",
            len(snapshot.permission_names),
            user_id,
        )

    def _record_failure(self, generation: int, exc: BaseException) -> None:
        if generation == self._generation:
            self._error = exc

    # ------------------------------------------------------------------ invalidation

    def clear_permissions(self) -> None:
        """Drop everything and return to UNLOADED (sign-out).

        Safe while a load is in flight: that load's result is discarded.
        """
        self._generation += 1
        self._flight.forget(self._user_id)
        self._snapshot = None
        self._last_load_time = None
        self._error = None

    def invalidate(self) -> None:
        """Mark the snapshot stale after a role or permission change.

        The current snapshot keeps being served until the next refresh;
        a load already in flight is discarded since it may predate the
        change.
        """
        self._generation += 1
        self._flight.forget(self._user_id)
        self._last_load_time = None

    def _check_principal(self, user_id: str) -> None:
        if user_id != self._user_id:
            raise ValueError(
                f"Session belongs to user {self._user_id!r}, not {user_id!r}"
            )


class SessionRegistry:
    """One :class:`PermissionSession` per signed-in user.

    Sessions untouched for longer than the TTL are dropped the next time
    a new one is opened.
    """

    def __init__(
        self,
        resolver: PermissionResolver,
        *,
        ttl: float = DEFAULT_SESSION_TTL,
        resolve_timeout: float = DEFAULT_RESOLVE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._resolver = resolver
        self._ttl = ttl
        self._resolve_timeout = resolve_timeout
        self._clock = clock
        self._sessions: dict[str, PermissionSession] = {}
        # user_id -> clock() of the last open/get
        self._last_seen: dict[str, float] = {}

    @property
    def resolver(self) -> PermissionResolver:
        return self._resolver

    def open(self, user_id: str) -> PermissionSession:
        """Return the session for *user_id*, creating it on first sign-in."""
        session = self._sessions.get(user_id)
        if session is None:
            self._evict_idle()
            session = self.transient(user_id)
            self._sessions[user_id] = session
        self._last_seen[user_id] = self._clock()
        return session

    def transient(self, user_id: str) -> PermissionSession:
        """A session for *user_id* that the registry does not keep."""
        return PermissionSession(
            self._resolver,
            user_id,
            ttl=self._ttl,
            resolve_timeout=self._resolve_timeout,
            clock=self._clock,
        )

    def get(self, user_id: str) -> PermissionSession | None:
        session = self._sessions.get(user_id)
        if session is not None:
            self._last_seen[user_id] = self._clock()
        return session

    def close(self, user_id: str) -> None:
        """Sign-out: clear and discard the user's session."""
        self._last_seen.pop(user_id, None)
        session = self._sessions.pop(user_id, None)
        if session is not None:
            session.clear_permissions()

    def invalidate(self, user_id: str) -> None:
        session = self._sessions.get(user_id)
        if session is not None:
            session.invalidate()

    def close_all(self) -> None:
        for user_id in list(self._sessions):
            self.close(user_id)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------ internal

    def _evict_idle(self) -> None:
        now = self._clock()
        idle = [
            user_id
            for user_id, seen in self._last_seen.items()
            if now - seen > self._ttl and not self._sessions[user_id].loading
        ]
        for user_id in idle:
            self.close(user_id)
        if idle:
            logger.debug("Evicted %d idle permission sessions", len(idle))
