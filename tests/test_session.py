"""Tests for permgate.session: state machine, single-flight and invalidation."""

from __future__ import annotations

import asyncio

import pytest

from permgate.access import AccessDecisions
from permgate.errors import DataSourceError, ResolutionTimeout
from permgate.resolver import PermissionResolver
from permgate.session import (
    DEFAULT_SESSION_TTL,
    LoadState,
    PermissionSession,
    SessionRegistry,
)
from tests.conftest import DOCS_READ, REPORTS_READ, FakeClock, FakeGateway


def _session(gateway: FakeGateway, clock: FakeClock | None = None, **kw) -> PermissionSession:
    kwargs = dict(kw)
    if clock is not None:
        kwargs["clock"] = clock
    return PermissionSession(PermissionResolver(gateway), "u1", **kwargs)


async def _until_loading(session: PermissionSession) -> None:
    for _ in range(100):
        if session.loading:
            return
        await asyncio.sleep(0)
    raise AssertionError("load never started")


# =====================================================================
# Basic lifecycle
# =====================================================================


class TestLifecycle:
    def test_starts_unloaded(self, editor_gateway):
        session = _session(editor_gateway)
        assert session.state is LoadState.UNLOADED
        assert session.snapshot is None
        assert session.is_permission_expired() is True

    def test_decisions_before_load_are_false(self, editor_gateway):
        decisions = AccessDecisions(_session(editor_gateway))
        assert decisions.has_permission("docs_read") is False
        assert decisions.has_module_access("/docs") is False
        assert decisions.can_read("docs") is False

    async def test_load_populates_snapshot(self, editor_gateway):
        session = _session(editor_gateway)
        await session.load_user_permissions("u1")
        assert session.state is LoadState.LOADED
        assert session.snapshot is not None
        assert session.snapshot.permission_names == {"docs_read", "reports_read"}
        assert session.error is None
        assert session.is_permission_expired() is False

    async def test_editor_scenario_decisions(self, editor_gateway):
        session = _session(editor_gateway)
        await session.load_user_permissions("u1")
        decisions = AccessDecisions(session)
        assert decisions.has_all_permissions(["docs_read", "reports_read"]) is True
        assert decisions.has_permission("docs_update") is False
        assert decisions.can_update("docs") is False
        assert decisions.can_read("reports") is True

    async def test_fresh_load_is_noop(self, editor_gateway):
        session = _session(editor_gateway)
        await session.load_user_permissions("u1")
        await session.load_user_permissions("u1")
        assert editor_gateway.calls["roles"] == 1

    async def test_force_reload(self, editor_gateway):
        session = _session(editor_gateway)
        await session.load_user_permissions("u1")
        await session.load_user_permissions("u1", force_reload=True)
        assert editor_gateway.calls["roles"] == 2

    async def test_other_principal_rejected(self, editor_gateway):
        session = _session(editor_gateway)
        with pytest.raises(ValueError, match="belongs to user"):
            await session.load_user_permissions("u2")
        with pytest.raises(ValueError):
            await session.refresh_if_needed("u2")

    def test_empty_user_id_rejected(self, editor_gateway):
        with pytest.raises(ValueError):
            PermissionSession(PermissionResolver(editor_gateway), "")


# =====================================================================
# Expiry
# =====================================================================


class TestExpiry:
    async def test_expires_after_ttl(self, editor_gateway, clock):
        session = _session(editor_gateway, clock)
        await session.load_user_permissions("u1")
        clock.advance(DEFAULT_SESSION_TTL - 1)
        assert session.is_permission_expired() is False
        clock.advance(2)
        assert session.is_permission_expired() is True

    async def test_stale_snapshot_still_served(self, editor_gateway, clock):
        session = _session(editor_gateway, clock)
        await session.load_user_permissions("u1")
        clock.advance(DEFAULT_SESSION_TTL + 1)
        assert session.state is LoadState.LOADED
        assert AccessDecisions(session).has_permission("docs_read") is True

    async def test_expired_load_reloads_without_force(self, editor_gateway, clock):
        session = _session(editor_gateway, clock)
        await session.load_user_permissions("u1")
        clock.advance(DEFAULT_SESSION_TTL + 1)
        await session.load_user_permissions("u1")
        assert editor_gateway.calls["roles"] == 2

    async def test_refresh_if_needed_noop_when_fresh(self, editor_gateway, clock):
        session = _session(editor_gateway, clock)
        await session.load_user_permissions("u1")
        await session.refresh_if_needed("u1")
        assert editor_gateway.calls["roles"] == 1

    async def test_refresh_if_needed_reloads_when_stale(self, editor_gateway, clock):
        session = _session(editor_gateway, clock)
        await session.load_user_permissions("u1")
        clock.advance(DEFAULT_SESSION_TTL + 1)
        await session.refresh_if_needed("u1")
        assert editor_gateway.calls["roles"] == 2
        assert session.is_permission_expired() is False

    async def test_refresh_if_needed_loads_when_unloaded(self, editor_gateway):
        session = _session(editor_gateway)
        await session.refresh_if_needed("u1")
        assert session.is_loaded

    async def test_custom_ttl(self, editor_gateway, clock):
        session = _session(editor_gateway, clock, ttl=60)
        await session.load_user_permissions("u1")
        clock.advance(61)
        assert session.is_permission_expired() is True


# =====================================================================
# Single-flight
# =====================================================================


class TestSingleFlight:
    async def test_concurrent_loads_resolve_once(self, editor_gateway):
        editor_gateway.gate = asyncio.Event()
        session = _session(editor_gateway)

        waiters = [
            asyncio.create_task(session.load_user_permissions("u1")) for _ in range(10)
        ]
        await _until_loading(session)
        assert session.state is LoadState.LOADING
        editor_gateway.gate.set()
        await asyncio.gather(*waiters)

        assert editor_gateway.calls["roles"] == 1
        assert editor_gateway.calls["overrides"] == 1
        assert session.state is LoadState.LOADED

    async def test_forced_load_joins_in_flight(self, editor_gateway):
        editor_gateway.gate = asyncio.Event()
        session = _session(editor_gateway)

        first = asyncio.create_task(session.load_user_permissions("u1"))
        await _until_loading(session)
        forced = asyncio.create_task(
            session.load_user_permissions("u1", force_reload=True)
        )
        await asyncio.sleep(0)
        editor_gateway.gate.set()
        await asyncio.gather(first, forced)

        assert editor_gateway.calls["roles"] == 1

    async def test_concurrent_waiters_all_see_failure(self, editor_gateway):
        editor_gateway.gate = asyncio.Event()
        editor_gateway.failures["overrides"] = DataSourceError("down")
        session = _session(editor_gateway)

        waiters = [
            asyncio.create_task(session.load_user_permissions("u1")) for _ in range(3)
        ]
        await _until_loading(session)
        editor_gateway.gate.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(r, DataSourceError) for r in results)
        assert editor_gateway.calls["overrides"] == 1


# =====================================================================
# Failures
# =====================================================================


class TestFailures:
    async def test_failure_without_snapshot_stays_unloaded(self, editor_gateway):
        err = DataSourceError("connection refused")
        editor_gateway.failures["roles"] = err
        session = _session(editor_gateway)

        with pytest.raises(DataSourceError):
            await session.load_user_permissions("u1")

        assert session.state is LoadState.UNLOADED
        assert session.error is err

    async def test_failure_keeps_previous_snapshot(self, editor_gateway):
        session = _session(editor_gateway)
        await session.load_user_permissions("u1")
        before = session.snapshot

        editor_gateway.failures["overrides"] = DataSourceError("timeout talking to db")
        with pytest.raises(DataSourceError):
            await session.load_user_permissions("u1", force_reload=True)

        assert session.snapshot is before
        assert session.state is LoadState.LOADED
        assert isinstance(session.error, DataSourceError)

    async def test_retry_after_failure_succeeds(self, editor_gateway):
        editor_gateway.failures["roles"] = DataSourceError("flaky")
        session = _session(editor_gateway)
        with pytest.raises(DataSourceError):
            await session.load_user_permissions("u1")

        del editor_gateway.failures["roles"]
        await session.load_user_permissions("u1")
        assert session.is_loaded
        assert session.error is None

    async def test_timeout_releases_slot(self, editor_gateway, caplog):
        editor_gateway.gate = asyncio.Event()  # never set: backend hangs
        session = _session(editor_gateway, resolve_timeout=0.05)

        with caplog.at_level("ERROR", logger="permgate.session"):
            with pytest.raises(ResolutionTimeout) as exc_info:
                await session.load_user_permissions("u1")

        assert exc_info.value.timeout == 0.05
        assert "timed out" in caplog.text
        assert session.state is LoadState.UNLOADED
        assert isinstance(session.error, ResolutionTimeout)

        editor_gateway.gate = None
        await session.load_user_permissions("u1")
        assert session.is_loaded

    async def test_timeout_is_a_data_source_error(self):
        assert issubclass(ResolutionTimeout, DataSourceError)


# =====================================================================
# Invalidation
# =====================================================================


class TestInvalidation:
    async def test_clear_permissions(self, editor_gateway):
        session = _session(editor_gateway)
        await session.load_user_permissions("u1")
        session.clear_permissions()
        assert session.state is LoadState.UNLOADED
        assert session.snapshot is None
        assert session.last_load_time is None
        assert AccessDecisions(session).has_permission("docs_read") is False

    async def test_clear_wins_over_in_flight_load(self, editor_gateway):
        editor_gateway.gate = asyncio.Event()
        session = _session(editor_gateway)

        load = asyncio.create_task(session.load_user_permissions("u1"))
        await _until_loading(session)
        session.clear_permissions()
        assert session.state is LoadState.UNLOADED

        editor_gateway.gate.set()
        await load

        assert session.snapshot is None
        assert session.state is LoadState.UNLOADED

    async def test_load_after_clear_starts_fresh(self, editor_gateway):
        editor_gateway.gate = asyncio.Event()
        session = _session(editor_gateway)

        stale = asyncio.create_task(session.load_user_permissions("u1"))
        await _until_loading(session)
        session.clear_permissions()

        fresh = asyncio.create_task(session.load_user_permissions("u1"))
        await asyncio.sleep(0)
        editor_gateway.gate.set()
        await asyncio.gather(stale, fresh)

        assert editor_gateway.calls["roles"] == 2
        assert session.is_loaded

    async def test_invalidate_keeps_serving_but_marks_stale(self, editor_gateway):
        session = _session(editor_gateway)
        await session.load_user_permissions("u1")
        session.invalidate()
        assert session.is_loaded
        assert session.is_permission_expired() is True
        assert AccessDecisions(session).has_permission("docs_read") is True

    async def test_invalidate_discards_in_flight_result(self, editor_gateway):
        session = _session(editor_gateway)
        await session.load_user_permissions("u1")
        before = session.snapshot

        editor_gateway.gate = asyncio.Event()
        reload = asyncio.create_task(
            session.load_user_permissions("u1", force_reload=True)
        )
        await _until_loading(session)
        session.invalidate()
        editor_gateway.gate.set()
        await reload

        assert session.snapshot is before
        assert session.is_permission_expired() is True

    async def test_refresh_after_invalidate_picks_up_changes(self, editor_gateway):
        session = _session(editor_gateway)
        await session.load_user_permissions("u1")
        editor_gateway.add_override("u1", DOCS_READ, granted=False)

        session.invalidate()
        await session.refresh_if_needed("u1")

        assert session.snapshot.permission_names == {"reports_read"}


# =====================================================================
# Atomic visibility
# =====================================================================


class TestAtomicVisibility:
    async def test_reader_sees_whole_snapshots_during_refresh(self, gateway):
        gateway.add_override("u1", DOCS_READ)
        session = _session(gateway)
        await session.load_user_permissions("u1")
        old = session.snapshot

        gateway.add_override("u1", REPORTS_READ)
        gateway.gate = asyncio.Event()
        reload = asyncio.create_task(
            session.load_user_permissions("u1", force_reload=True)
        )
        await _until_loading(session)

        # mid-refresh: still entirely the previous load
        mid = session.snapshot
        assert mid is old
        assert mid.permission_names == {"docs_read"}
        assert [m.id for m in mid.accessible_modules] == ["docs"]

        gateway.gate.set()
        await reload

        new = session.snapshot
        assert new.permission_names == {"docs_read", "reports_read"}
        assert {m.id for m in new.accessible_modules} == {"docs", "reports"}


# =====================================================================
# SessionRegistry
# =====================================================================


class TestSessionRegistry:
    def test_open_returns_same_session(self, resolver):
        registry = SessionRegistry(resolver)
        assert registry.open("u1") is registry.open("u1")
        assert "u1" in registry
        assert len(registry) == 1

    def test_sessions_are_per_user(self, resolver):
        registry = SessionRegistry(resolver)
        assert registry.open("u1") is not registry.open("u2")

    async def test_close_clears_and_drops(self, resolver):
        registry = SessionRegistry(resolver)
        session = registry.open("u1")
        await session.load_user_permissions("u1")

        registry.close("u1")

        assert session.snapshot is None
        assert registry.get("u1") is None

    def test_close_unknown_user_is_noop(self, resolver):
        SessionRegistry(resolver).close("ghost")

    async def test_invalidate_marks_session_stale(self, resolver):
        registry = SessionRegistry(resolver)
        session = registry.open("u1")
        await session.load_user_permissions("u1")
        registry.invalidate("u1")
        assert session.is_permission_expired() is True

    async def test_settings_propagate(self, resolver, clock):
        registry = SessionRegistry(resolver, ttl=5, clock=clock)
        session = registry.open("u1")
        await session.load_user_permissions("u1")
        clock.advance(6)
        assert session.is_permission_expired() is True

    async def test_close_all(self, resolver):
        registry = SessionRegistry(resolver)
        registry.open("u1")
        registry.open("u2")
        registry.close_all()
        assert len(registry) == 0

    async def test_idle_sessions_evicted_on_next_open(self, resolver, clock):
        registry = SessionRegistry(resolver, ttl=5, clock=clock)
        idle = registry.open("u1")
        await idle.load_user_permissions("u1")
        clock.advance(6)

        registry.open("u2")

        assert "u1" not in registry
        assert idle.snapshot is None
        assert len(registry) == 1

    def test_recently_used_sessions_survive(self, resolver, clock):
        registry = SessionRegistry(resolver, ttl=5, clock=clock)
        registry.open("u1")
        clock.advance(4)
        assert registry.get("u1") is not None
        clock.advance(4)

        registry.open("u2")

        assert "u1" in registry

    async def test_loading_session_is_not_evicted(
        self, resolver, editor_gateway, clock
    ):
        editor_gateway.gate = asyncio.Event()
        registry = SessionRegistry(resolver, ttl=5, clock=clock)
        session = registry.open("u1")
        load = asyncio.create_task(session.load_user_permissions("u1"))
        await _until_loading(session)
        clock.advance(6)

        registry.open("u2")

        assert "u1" in registry
        editor_gateway.gate.set()
        await load
        assert session.is_loaded

    def test_transient_session_is_not_registered(self, resolver):
        registry = SessionRegistry(resolver)
        session = registry.transient("u1")
        assert session.user_id == "u1"
        assert "u1" not in registry
        assert registry.open("u1") is not session
