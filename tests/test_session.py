"""
Tests for the session manager and session stores.

Time only moves through the FakeClock from conftest, so expiry and
eviction are deterministic.
"""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from queryguard.config import Config
from queryguard.exceptions import (
    ModeLockedError,
    PersistenceError,
    SessionNotFoundError,
    UnsupportedModeError,
    UploadContextError,
)
from queryguard.modes import SessionContext, WorkflowMode
from queryguard.session import (
    SESSION_NOT_FOUND,
    InMemorySessionStore,
    RedisSessionStore,
    SessionManager,
    SessionStore,
    generate_session_id,
)

from conftest import NOW

HOUR = 60 * 60


class FailingStore(SessionStore):
    """Store whose every operation fails."""

    def __init__(self) -> None:
        self.closed = False

    async def save(self, context: SessionContext, ttl_seconds: float) -> None:
        raise PersistenceError("store unavailable")

    async def load(self, session_id: str) -> SessionContext | None:
        raise PersistenceError("store unavailable")

    async def delete(self, session_id: str) -> None:
        raise PersistenceError("store unavailable")

    async def close(self) -> None:
        self.closed = True


class FakeRedis:
    """Just enough of redis.asyncio.Redis for RedisSessionStore."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.closed = False

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.data[key] = value
        self.expiry[key] = ex

    async def get(self, key: str) -> str | None:
        if self.fail:
            raise RedisConnectionError("connection refused")
        return self.data.get(key)

    async def delete(self, key: str) -> int:
        if self.fail:
            raise RedisConnectionError("connection refused")
        return 1 if self.data.pop(key, None) is not None else 0

    async def aclose(self) -> None:
        self.closed = True


def make_manager(uploads, clock, **kwargs) -> SessionManager:
    config = kwargs.pop("config", None) or Config()
    return SessionManager(config=config, uploads=uploads, clock=clock, **kwargs)


def make_session(session_id: str = "s1") -> SessionContext:
    return SessionContext(
        session_id=session_id,
        client_id="c1",
        mode=WorkflowMode.AUDIT,
        current_upload_id="upload_c1_q1",
        created_at=NOW,
        last_activity=NOW,
    )


# =============================================================================
# Creation and lookup
# =============================================================================

class TestCreateSession:

    def test_session_id_format(self) -> None:
        session_id = generate_session_id(NOW)

        assert re.fullmatch(r"sess_\d+_[a-z0-9]{9}", session_id)
        assert session_id.startswith(f"sess_{int(NOW.timestamp() * 1000)}_")

    async def test_create_and_get(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)

        session = await manager.create_session("c1", "audit", "upload_c1_q1")

        assert session.locked
        assert session.mode == WorkflowMode.AUDIT
        assert await manager.get_session(session.session_id) == session
        assert len(manager) == 1

    async def test_unknown_mode(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)

        with pytest.raises(UnsupportedModeError):
            await manager.create_session("c1", "trading")
        assert len(manager) == 0

    async def test_missing_session(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)

        assert await manager.get_session("sess_missing") is None
        assert not await manager.remove_session("sess_missing")

    async def test_cap_evicts_least_recently_active(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock, config=Config(max_sessions_per_client=2))

        first = await manager.create_session("c1", "lending")
        clock.advance(1)
        second = await manager.create_session("c1", "lending")
        clock.advance(1)
        await manager.update_session(first)
        clock.advance(1)
        third = await manager.create_session("c1", "lending")

        remaining = {s.session_id for s in await manager.get_client_sessions("c1")}
        assert remaining == {first.session_id, third.session_id}
        assert await manager.get_session(second.session_id) is None

    async def test_cap_is_per_client(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock, config=Config(max_sessions_per_client=1))

        await manager.create_session("c1", "lending")
        await manager.create_session("c2", "lending")

        assert len(manager) == 2

    async def test_client_sessions_most_recent_first(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)

        older = await manager.create_session("c1", "lending")
        clock.advance(5)
        newer = await manager.create_session("c1", "lending")

        sessions = await manager.get_client_sessions("c1")

        assert [s.session_id for s in sessions] == [newer.session_id, older.session_id]
        assert await manager.get_client_sessions("nobody") == []


# =============================================================================
# Updates
# =============================================================================

class TestUpdateSession:

    async def test_update_touches_and_keeps_identity(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)
        session = await manager.create_session("c1", "audit", "upload_c1_q1")
        clock.advance(30)

        updated = await manager.update_session(
            session.model_copy(update={"client_id": "c2", "created_at": NOW - timedelta(days=1)})
        )

        assert updated.client_id == "c1"
        assert updated.created_at == session.created_at
        assert updated.last_activity == NOW + timedelta(seconds=30)

    async def test_mode_change_is_rejected(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)
        session = await manager.create_session("c1", "audit", "upload_c1_q1")

        with pytest.raises(ModeLockedError) as exc_info:
            await manager.update_session(session.model_copy(update={"mode": WorkflowMode.LENDING}))

        assert exc_info.value.current_mode == "audit"
        assert exc_info.value.requested_mode == "lending"
        assert (await manager.get_session(session.session_id)).mode == WorkflowMode.AUDIT

    async def test_unknown_session(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)

        with pytest.raises(SessionNotFoundError):
            await manager.update_session(make_session("sess_unknown"))

    async def test_set_upload_context(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)
        session = await manager.create_session("c1", "audit", "upload_c1_q1")

        updated = await manager.set_session_upload_context(session.session_id, "upload_c1_q2")

        assert updated.current_upload_id == "upload_c1_q2"
        assert (await manager.get_session(session.session_id)).current_upload_id == "upload_c1_q2"

        with pytest.raises(UploadContextError):
            await manager.set_session_upload_context(session.session_id, "upload_c2_q1")
        with pytest.raises(SessionNotFoundError):
            await manager.set_session_upload_context("sess_unknown", "upload_c1_q1")


# =============================================================================
# Expiry
# =============================================================================

class TestExpiry:

    async def test_tick_evicts_at_expiry(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock, config=Config(session_timeout_seconds=HOUR))
        first = await manager.create_session("c1", "lending")
        clock.advance(10)
        second = await manager.create_session("c1", "lending")

        assert manager.tick(NOW + timedelta(seconds=HOUR - 1)) == []
        assert manager.tick(NOW + timedelta(seconds=HOUR)) == [first.session_id]
        assert manager.tick(NOW + timedelta(seconds=HOUR + 10)) == [second.session_id]
        assert len(manager) == 0

    async def test_activity_does_not_extend_expiry(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock, config=Config(session_timeout_seconds=HOUR))
        session = await manager.create_session("c1", "lending")
        clock.advance(HOUR - 60)
        await manager.update_session(session)

        assert manager.tick(NOW + timedelta(seconds=HOUR)) == [session.session_id]

    async def test_removed_sessions_are_skipped(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock, config=Config(session_timeout_seconds=HOUR))
        session = await manager.create_session("c1", "lending")
        await manager.remove_session(session.session_id)

        assert manager.tick(NOW + timedelta(seconds=2 * HOUR)) == []

    async def test_get_session_drops_expired(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock, config=Config(session_timeout_seconds=HOUR))
        session = await manager.create_session("c1", "lending")
        clock.advance(HOUR)

        assert await manager.get_session(session.session_id) is None
        assert len(manager) == 0

    async def test_cleanup_expired_sessions(self, uploads, clock) -> None:
        store = InMemorySessionStore()
        manager = make_manager(
            uploads, clock, config=Config(session_timeout_seconds=HOUR), store=store
        )
        await manager.create_session("c1", "lending")
        await manager.create_session("c2", "lending")
        clock.advance(HOUR)

        assert await manager.cleanup_expired_sessions() == 2
        assert len(store) == 0

    async def test_emergency_cleanup(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)
        await manager.create_session("c1", "lending")
        await manager.create_session("c2", "lending")

        assert await manager.emergency_cleanup() == 2
        assert len(manager) == 0
        assert manager.get_stats().total_sessions == 0

    async def test_background_cleanup_lifecycle(self, uploads, clock) -> None:
        store = FailingStore()
        manager = make_manager(
            uploads, clock, config=Config(cleanup_interval_seconds=0.01), store=store
        )

        task = manager.start_cleanup()
        assert manager.start_cleanup() is task
        await asyncio.sleep(0.03)
        await manager.shutdown()

        assert task.done()
        assert store.closed


# =============================================================================
# Statistics and mode operations
# =============================================================================

class TestSessionOperations:

    async def test_stats(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)
        await manager.create_session("c1", "audit", "upload_c1_q1")
        clock.advance(100)
        await manager.create_session("c1", "lending")

        stats = manager.get_stats()

        assert stats.total_sessions == 2
        assert stats.active_sessions == 2
        assert stats.sessions_by_mode == {"audit": 1, "lending": 1}
        assert stats.oldest_session == NOW
        assert stats.average_session_age_seconds == 50.0

    async def test_validate_session_query(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)
        session = await manager.create_session("c1", "lending")

        result = await manager.validate_session_query(
            session.session_id, "SELECT ssn FROM lending_borrowers"
        )
        missing = await manager.validate_session_query("sess_unknown", "SELECT 1")

        assert not result.is_valid
        assert "Column 'ssn' contains sensitive data and is prohibited" in result.errors
        assert result.session == session
        assert missing.errors == (SESSION_NOT_FOUND,)

    async def test_apply_session_constraints(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)
        session = await manager.create_session("c1", "audit", "upload_c1_q1")

        result = await manager.apply_session_constraints(
            session.session_id, "SELECT id FROM client_ledger"
        )
        missing = await manager.apply_session_constraints("sess_unknown", "SELECT 1")

        assert "TOP 5000" in result.modification.modified_query
        assert result.errors == ()
        assert missing.modification is None
        assert missing.errors == (SESSION_NOT_FOUND,)

    async def test_recommendations(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock)
        session = await manager.create_session("c1", "lending")

        recommendations = await manager.get_session_recommendations(session.session_id)

        assert recommendations[0].startswith("Available actions for lending mode")
        assert await manager.get_session_recommendations("sess_unknown") == [SESSION_NOT_FOUND]


# =============================================================================
# Stores
# =============================================================================

class TestStores:

    async def test_in_memory_snapshots(self, uploads, clock) -> None:
        store = InMemorySessionStore()
        manager = make_manager(uploads, clock, store=store)

        session = await manager.create_session("c1", "audit", "upload_c1_q1")

        assert await store.load(session.session_id) == session
        await manager.remove_session(session.session_id)
        assert await store.load(session.session_id) is None

    async def test_failing_store_does_not_fail_operations(self, uploads, clock) -> None:
        manager = make_manager(uploads, clock, store=FailingStore())

        session = await manager.create_session("c1", "lending")
        await manager.update_session(session)

        assert await manager.remove_session(session.session_id)

    async def test_redis_store_round_trip(self) -> None:
        client = FakeRedis()
        store = RedisSessionStore(client)
        session = make_session()

        await store.save(session, ttl_seconds=0.2)

        assert client.expiry["queryguard:session:s1"] == 1
        assert await store.load("s1") == session
        await store.delete("s1")
        assert await store.load("s1") is None
        await store.close()
        assert client.closed

    async def test_redis_failures_become_persistence_errors(self) -> None:
        store = RedisSessionStore(FakeRedis(fail=True))

        with pytest.raises(PersistenceError):
            await store.save(make_session(), ttl_seconds=60)
        with pytest.raises(PersistenceError):
            await store.load("s1")
        with pytest.raises(PersistenceError):
            await store.delete("s1")

    async def test_corrupt_snapshot(self) -> None:
        client = FakeRedis()
        client.data["queryguard:session:s1"] = '{"session_id": "s1"}'

        with pytest.raises(PersistenceError):
            await RedisSessionStore(client).load("s1")
