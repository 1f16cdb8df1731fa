# tests/core/test_session_manager.py
"""
Tests for the session lifecycle manager.

Covers the concurrent-session cap, lazy inactivity expiry, sliding
refresh, invalidation, listing and the sweep.
"""

import asyncio
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from rideguard.core.exceptions import ConfigurationError, SessionCreationError, StoreError
from rideguard.core.security import SessionConfig, SessionManager, SessionSweeper
from rideguard.models.activity import ActivityAction


def _actions(activity_logger):
    return [c.kwargs["action"] for c in activity_logger.record_activity.call_args_list]


class TestCreateSession:
    """Session creation and the concurrent-session cap"""

    async def test_create_returns_signed_grant(self, manager, credentials, request_context, clock):
        grant = await manager.create_session("user-a", request_context)

        assert len(grant.session_id) == 64
        assert grant.session.is_active
        assert grant.session.expires_at == clock.now + timedelta(hours=24)
        assert grant.session.device_info.browser == "Chrome"
        assert grant.session.device_info.os == "Windows"

        claims = credentials.verify(grant.token)
        assert claims.user_id == "user-a"
        assert claims.session_id == grant.session_id

    async def test_remember_me_uses_extended_duration(self, manager, request_context, clock):
        grant = await manager.create_session("user-a", request_context, remember_me=True)

        assert grant.session.remember_me
        assert grant.session.expires_at == clock.now + timedelta(days=30)

    async def test_session_ids_are_unique(self, manager, request_context):
        grants = [await manager.create_session(f"user-{i}", request_context) for i in range(20)]
        assert len({g.session_id for g in grants}) == 20

    async def test_sixth_session_evicts_oldest(self, manager, session_store, request_context, clock, activity_logger):
        """S1..S5 active, create S6 -> S1 inactive, active set is S2..S6"""
        created = []
        for _ in range(5):
            created.append(await manager.create_session("user-a", request_context))
            clock.advance(minutes=1)

        sixth = await manager.create_session("user-a", request_context)

        oldest = await session_store.get(created[0].session_id)
        assert oldest.is_active is False

        active = await session_store.find_by_user("user-a", active_only=True)
        assert {s.session_id for s in active} == {g.session_id for g in created[1:]} | {sixth.session_id}
        assert ActivityAction.SESSION_EVICTED in _actions(activity_logger)

    async def test_cap_holds_for_concurrent_creates(self, manager, session_store, request_context):
        await asyncio.gather(*[manager.create_session("user-a", request_context) for _ in range(12)])

        active = await session_store.find_by_user("user-a", active_only=True)
        assert len(active) == 5

    async def test_cap_is_per_user(self, manager, session_store, request_context):
        for _ in range(5):
            await manager.create_session("user-a", request_context)
        await manager.create_session("user-b", request_context)

        assert len(await session_store.find_by_user("user-a")) == 5
        assert len(await session_store.find_by_user("user-b")) == 1

    async def test_store_error_is_fatal(self, manager, session_store, request_context):
        with patch.object(session_store, "insert", AsyncMock(side_effect=StoreError("down", store_name="session"))):
            with pytest.raises(SessionCreationError) as exc_info:
                await manager.create_session("user-a", request_context)

        assert exc_info.value.user_id == "user-a"
        assert exc_info.value.message == "Session creation failed"

    async def test_store_timeout_is_fatal(self, session_store, credentials, request_context, clock):
        config = SessionConfig(store_timeout=timedelta(milliseconds=20))
        manager = SessionManager(session_store, credentials, config, clock=clock)

        async def slow_insert(session):
            await asyncio.sleep(1)

        with patch.object(session_store, "insert", side_effect=slow_insert):
            with pytest.raises(SessionCreationError):
                await manager.create_session("user-a", request_context)

    async def test_creation_is_recorded(self, manager, request_context, activity_logger):
        await manager.create_session("user-a", request_context)

        call = activity_logger.record_activity.call_args
        assert call.kwargs["action"] == ActivityAction.SESSION_CREATED
        assert call.kwargs["user_id"] == "user-a"
        assert call.kwargs["context"] == request_context


class TestValidateSession:
    """Validation including lazy inactivity expiry"""

    async def test_valid_session_bumps_last_activity(self, manager, session_store, request_context, clock):
        grant = await manager.create_session("user-a", request_context)
        clock.advance(minutes=10)

        result = await manager.validate_session(grant.session_id, "user-a")

        assert result.valid
        stored = await session_store.get(grant.session_id)
        assert stored.last_activity == clock.now

    async def test_wrong_owner_is_invalid(self, manager, request_context):
        grant = await manager.create_session("user-a", request_context)

        result = await manager.validate_session(grant.session_id, "user-b")
        assert result.valid is False
        assert result.session is None

    async def test_unknown_session_is_invalid(self, manager):
        result = await manager.validate_session("f" * 64, "user-a")
        assert result.valid is False

    async def test_idle_session_is_deactivated(self, manager, session_store, request_context, clock, activity_logger):
        """last_activity = now - 31min, expires_at still hours away"""
        grant = await manager.create_session("user-a", request_context)
        clock.advance(minutes=31)
        assert grant.session.expires_at > clock.now

        result = await manager.validate_session(grant.session_id, "user-a")

        assert result.valid is False
        stored = await session_store.get(grant.session_id)
        assert stored.is_active is False
        assert ActivityAction.SESSION_EXPIRED in _actions(activity_logger)

    async def test_idle_session_stays_invalid(self, manager, request_context, clock):
        grant = await manager.create_session("user-a", request_context)
        clock.advance(minutes=31)
        await manager.validate_session(grant.session_id, "user-a")

        clock.advance(minutes=1)
        result = await manager.validate_session(grant.session_id, "user-a")
        assert result.valid is False

    async def test_expired_session_is_invalid(self, manager, session_store, request_context, clock):
        grant = await manager.create_session("user-a", request_context)
        # Keep it busy so only the absolute expiry applies
        for _ in range(50):
            clock.advance(minutes=29)
            await session_store.update_active(grant.session_id, last_activity=clock.now)

        assert clock.now >= grant.session.expires_at
        result = await manager.validate_session(grant.session_id, "user-a")
        assert result.valid is False

    async def test_invalidated_session_is_invalid(self, manager, request_context):
        grant = await manager.create_session("user-a", request_context)
        await manager.invalidate_session(grant.session_id, "user-a")

        result = await manager.validate_session(grant.session_id, "user-a")
        assert result.valid is False

    async def test_store_error_is_invalid_not_raised(self, manager, session_store, request_context):
        grant = await manager.create_session("user-a", request_context)

        with patch.object(session_store, "get", AsyncMock(side_effect=StoreError("down"))):
            result = await manager.validate_session(grant.session_id, "user-a")

        assert result.valid is False
        assert manager.get_metrics()["validation_failures"] == 1


class TestRefreshIfNeeded:
    """Sliding expiration"""

    async def test_no_refresh_outside_threshold(self, manager, session_store, request_context, clock):
        grant = await manager.create_session("user-a", request_context)
        clock.advance(hours=23, minutes=44)

        result = await manager.refresh_if_needed(grant.session)

        assert result.refreshed is False
        assert result.new_token is None
        stored = await session_store.get(grant.session_id)
        assert stored.expires_at == grant.session.expires_at

    async def test_refresh_inside_threshold(self, manager, session_store, credentials, request_context, clock):
        grant = await manager.create_session("user-a", request_context)
        clock.advance(hours=23, minutes=50)

        result = await manager.refresh_if_needed(grant.session)

        assert result.refreshed
        stored = await session_store.get(grant.session_id)
        assert stored.expires_at == clock.now + timedelta(hours=24)

        claims = credentials.verify(result.new_token)
        assert claims.session_id == grant.session_id
        assert claims.user_id == "user-a"

    async def test_refresh_keeps_remember_me_duration(self, manager, session_store, request_context, clock):
        grant = await manager.create_session("user-a", request_context, remember_me=True)
        clock.advance(days=29, hours=23, minutes=50)

        result = await manager.refresh_if_needed(grant.session)

        assert result.refreshed
        stored = await session_store.get(grant.session_id)
        assert stored.expires_at == clock.now + timedelta(days=30)

    async def test_refresh_of_inactive_session_is_noop(self, manager, request_context, clock):
        grant = await manager.create_session("user-a", request_context)
        await manager.invalidate_session(grant.session_id, "user-a")
        clock.advance(hours=23, minutes=50)

        result = await manager.refresh_if_needed(grant.session)
        assert result.refreshed is False

    async def test_refresh_store_error_reports_not_refreshed(self, manager, session_store, request_context, clock):
        grant = await manager.create_session("user-a", request_context)
        clock.advance(hours=23, minutes=50)

        with patch.object(session_store, "update_active", AsyncMock(side_effect=StoreError("down"))):
            result = await manager.refresh_if_needed(grant.session)

        assert result.refreshed is False


class TestInvalidation:

    async def test_invalidate_is_idempotent(self, manager, session_store, request_context):
        grant = await manager.create_session("user-a", request_context)

        assert await manager.invalidate_session(grant.session_id, "user-a") is True
        assert await manager.invalidate_session(grant.session_id, "user-a") is True
        assert (await session_store.get(grant.session_id)).is_active is False

    async def test_invalidate_requires_owner(self, manager, session_store, request_context):
        grant = await manager.create_session("user-a", request_context)

        assert await manager.invalidate_session(grant.session_id, "user-b") is False
        assert (await session_store.get(grant.session_id)).is_active is True

    async def test_invalidate_unknown_session(self, manager):
        assert await manager.invalidate_session("0" * 64, "user-a") is False

    async def test_invalidate_all(self, manager, session_store, request_context):
        for _ in range(3):
            await manager.create_session("user-a", request_context)
        other = await manager.create_session("user-b", request_context)

        assert await manager.invalidate_all_sessions("user-a") is True

        assert await session_store.find_by_user("user-a", active_only=True) == []
        assert (await session_store.get(other.session_id)).is_active

    async def test_invalidate_all_store_error(self, manager, session_store):
        with patch.object(session_store, "deactivate_user", AsyncMock(side_effect=StoreError("down"))):
            assert await manager.invalidate_all_sessions("user-a") is False


class TestListAndSweep:

    async def test_list_newest_activity_first(self, manager, request_context, clock):
        first = await manager.create_session("user-a", request_context)
        clock.advance(minutes=1)
        second = await manager.create_session("user-a", request_context)
        clock.advance(minutes=1)
        await manager.validate_session(first.session_id, "user-a")

        sessions = await manager.list_active_sessions("user-a")
        assert [s.session_id for s in sessions] == [first.session_id, second.session_id]

    async def test_list_excludes_inactive(self, manager, request_context):
        kept = await manager.create_session("user-a", request_context)
        ended = await manager.create_session("user-a", request_context)
        await manager.invalidate_session(ended.session_id, "user-a")

        sessions = await manager.list_active_sessions("user-a")
        assert [s.session_id for s in sessions] == [kept.session_id]

    async def test_list_store_error_is_empty(self, manager, session_store):
        with patch.object(session_store, "find_by_user", AsyncMock(side_effect=StoreError("down"))):
            assert await manager.list_active_sessions("user-a") == []

    async def test_sweep_removes_idle_and_expired(self, manager, session_store, request_context, clock):
        stale = await manager.create_session("user-a", request_context)
        clock.advance(minutes=40)
        fresh = await manager.create_session("user-b", request_context)

        removed = await manager.sweep_expired_sessions()

        assert removed == 1
        assert await session_store.get(stale.session_id) is None
        assert await session_store.get(fresh.session_id) is not None
        assert await manager.sweep_expired_sessions() == 0

    async def test_sweep_store_error_returns_zero(self, manager, session_store):
        with patch.object(session_store, "delete_stale", AsyncMock(side_effect=StoreError("down"))):
            assert await manager.sweep_expired_sessions() == 0


class TestSessionConfig:

    def test_rejects_zero_cap(self):
        with pytest.raises(ConfigurationError):
            SessionConfig(max_concurrent_sessions=0)

    def test_duration_for(self):
        config = SessionConfig()
        assert config.duration_for(False) == timedelta(hours=24)
        assert config.duration_for(True) == timedelta(days=30)


class TestSessionSweeper:

    async def test_runs_periodically_and_stops(self):
        manager = AsyncMock()
        manager.sweep_expired_sessions.return_value = 0
        sweeper = SessionSweeper(manager, interval=timedelta(milliseconds=10))

        sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert manager.sweep_expired_sessions.await_count >= 1
        assert sweeper.running is False
