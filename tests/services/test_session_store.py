# tests/services/test_session_store.py
"""
Tests for the session stores.

The in-memory store is exercised directly; the Redis store runs
against a mocked RedisService so no Redis instance is needed.
"""
import asyncio
import json
import pytest
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from rideguard.models.session import Session, utcnow
from rideguard.services.redis_service import RedisService
from rideguard.services.session_store import (
    DEACTIVATE_SCRIPT,
    UPDATE_ACTIVE_SCRIPT,
    InMemorySessionStore,
    RedisSessionStore,
)


def make_session(user_id="user-a", minutes_idle=0, expires_in=timedelta(hours=24), **kwargs) -> Session:
    now = utcnow()
    return Session(
        user_id=user_id,
        last_activity=now - timedelta(minutes=minutes_idle),
        expires_at=now + expires_in,
        **kwargs,
    )


class TestInMemorySessionStore:

    async def test_records_are_copied(self):
        store = InMemorySessionStore()
        session = make_session()
        await store.insert(session)

        session.is_active = False
        fetched = await store.get(session.session_id)
        assert fetched.is_active is True

        fetched.user_id = "someone-else"
        assert (await store.get(session.session_id)).user_id == "user-a"

    async def test_duplicate_insert_rejected(self):
        store = InMemorySessionStore()
        session = make_session()
        await store.insert(session)

        with pytest.raises(ValueError):
            await store.insert(session)

    async def test_update_active_never_reactivates(self):
        store = InMemorySessionStore()
        session = make_session()
        await store.insert(session)
        await store.deactivate([session.session_id])

        assert await store.update_active(session.session_id, last_activity=utcnow()) is None
        assert (await store.get(session.session_id)).is_active is False

    async def test_deactivate_counts_changes(self):
        store = InMemorySessionStore()
        sessions = [make_session() for _ in range(3)]
        for s in sessions:
            await store.insert(s)

        assert await store.deactivate([s.session_id for s in sessions[:2]]) == 2
        assert await store.deactivate([s.session_id for s in sessions]) == 1
        assert await store.deactivate(["missing"]) == 0

    async def test_find_by_user(self):
        store = InMemorySessionStore()
        active = make_session()
        inactive = make_session(is_active=False)
        other = make_session(user_id="user-b")
        for s in (active, inactive, other):
            await store.insert(s)

        assert [s.session_id for s in await store.find_by_user("user-a")] == [active.session_id]
        assert len(await store.find_by_user("user-a", active_only=False)) == 2

    async def test_delete_stale(self):
        store = InMemorySessionStore()
        now = utcnow()
        fresh = make_session()
        idle = make_session(minutes_idle=45)
        expired = make_session(expires_in=timedelta(seconds=-1))
        for s in (fresh, idle, expired):
            await store.insert(s)

        removed = await store.delete_stale(now, now - timedelta(minutes=30))

        assert removed == 2
        assert await store.get(fresh.session_id) is not None
        assert await store.delete_stale(now, now - timedelta(minutes=30)) == 0

    async def test_user_lock_serializes(self):
        store = InMemorySessionStore()
        order = []

        async def critical(tag):
            async with store.user_lock("user-a"):
                order.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(critical("a"), critical("b"))
        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    async def test_user_locks_are_released(self):
        store = InMemorySessionStore()

        async with store.user_lock("user-a"):
            assert "user-a" in store._locks
        async with store.user_lock("user-b"):
            pass

        assert store._locks == {}

    async def test_user_lock_kept_while_contended(self):
        store = InMemorySessionStore()
        entered = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with store.user_lock("user-a"):
                entered.set()
                await release.wait()

        async def waiter():
            await entered.wait()
            async with store.user_lock("user-a"):
                pass

        tasks = [asyncio.create_task(holder()), asyncio.create_task(waiter())]
        await entered.wait()
        await asyncio.sleep(0)
        assert store._locks["user-a"][1] == 2

        release.set()
        await asyncio.gather(*tasks)
        assert store._locks == {}


@pytest.fixture
def redis_service():
    """RedisService with every data operation mocked"""
    service = MagicMock(spec=RedisService)
    service.key.side_effect = lambda *parts: ":".join(("rideguard",) + parts)
    for name in (
        "get_json", "set_json", "mget_json", "delete", "sadd", "srem",
        "smembers", "zadd", "zrem", "zrangebyscore", "eval_script",
    ):
        setattr(service, name, AsyncMock())
    return service


class TestRedisSessionStore:

    async def test_insert_writes_record_and_indexes(self, redis_service):
        store = RedisSessionStore(redis_service)
        session = make_session()

        await store.insert(session)

        key, payload = redis_service.set_json.await_args.args
        assert key == f"rideguard:session:{session.session_id}"
        assert payload["user_id"] == "user-a"
        assert 0 < redis_service.set_json.await_args.kwargs["ttl"] <= 24 * 3600
        redis_service.sadd.assert_awaited_with("rideguard:user:user-a:sessions", session.session_id)

        zadd_keys = [c.args[0] for c in redis_service.zadd.await_args_list]
        assert zadd_keys == ["rideguard:sessions:expiry", "rideguard:sessions:active"]

    async def test_get_missing(self, redis_service):
        redis_service.get_json.return_value = None
        assert await RedisSessionStore(redis_service).get("nope") is None

    async def test_get_round_trips_model(self, redis_service):
        session = make_session()
        redis_service.get_json.return_value = session.model_dump(mode="json")

        fetched = await RedisSessionStore(redis_service).get(session.session_id)
        assert fetched == session

    async def test_update_active_runs_as_script(self, redis_service):
        session = make_session()
        new_expiry = utcnow() + timedelta(hours=2)
        redis_service.eval_script.return_value = session.model_copy(
            update={"expires_at": new_expiry}
        ).model_dump_json()

        updated = await RedisSessionStore(redis_service).update_active(session.session_id, expires_at=new_expiry)

        assert updated.expires_at == new_expiry
        source, keys, args = redis_service.eval_script.await_args.args
        assert source == UPDATE_ACTIVE_SCRIPT
        assert keys == [
            f"rideguard:session:{session.session_id}",
            "rideguard:sessions:expiry",
            "rideguard:sessions:active",
        ]
        assert args[2] == ""
        assert args[4] == new_expiry.isoformat()
        assert 0 < args[6] <= 2 * 3600
        redis_service.get_json.assert_not_awaited()
        redis_service.set_json.assert_not_awaited()

    async def test_update_active_skips_inactive(self, redis_service):
        redis_service.eval_script.return_value = None

        result = await RedisSessionStore(redis_service).update_active("sid", last_activity=utcnow())

        assert result is None

    async def test_deactivate_counts_script_results(self, redis_service):
        redis_service.eval_script.side_effect = [1, 0]

        changed = await RedisSessionStore(redis_service).deactivate(["s1", "s2"])

        assert changed == 1
        first = redis_service.eval_script.await_args_list[0].args
        assert first[0] == DEACTIVATE_SCRIPT
        assert first[1] == ["rideguard:session:s1", "rideguard:sessions:active"]
        redis_service.set_json.assert_not_awaited()

    async def test_find_by_user_prunes_expired_entries(self, redis_service):
        live = make_session()
        redis_service.smembers.return_value = {live.session_id, "gone"}
        records = {live.session_id: live.model_dump(mode="json"), "gone": None}
        redis_service.mget_json.side_effect = lambda keys: [records[k.rsplit(":", 1)[1]] for k in keys]

        sessions = await RedisSessionStore(redis_service).find_by_user("user-a")

        assert [s.session_id for s in sessions] == [live.session_id]
        redis_service.srem.assert_awaited_with("rideguard:user:user-a:sessions", "gone")

    async def test_delete_stale_uses_both_indexes(self, redis_service):
        now = datetime(2024, 5, 1, tzinfo=timezone.utc)
        redis_service.zrangebyscore.side_effect = [["s1", "s2"], ["s2", "s3"]]
        redis_service.mget_json.return_value = [
            {"user_id": "user-a"}, {"user_id": "user-a"}, None
        ]

        removed = await RedisSessionStore(redis_service).delete_stale(now, now - timedelta(minutes=30))

        assert removed == 3
        redis_service.delete.assert_awaited_with(
            "rideguard:session:s1", "rideguard:session:s2", "rideguard:session:s3"
        )
        idle_call = redis_service.zrangebyscore.await_args_list[1]
        assert idle_call.args[2].startswith("(")

    async def test_delete_stale_nothing_to_do(self, redis_service):
        redis_service.zrangebyscore.side_effect = [[], []]
        removed = await RedisSessionStore(redis_service).delete_stale(utcnow(), utcnow())

        assert removed == 0
        redis_service.delete.assert_not_awaited()

    def test_user_lock_uses_namespaced_key(self, redis_service):
        RedisSessionStore(redis_service, lock_timeout=3.0).user_lock("user-a")
        redis_service.lock.assert_called_once_with("rideguard:lock:user:user-a", timeout=3.0)


class ScriptedRedis:
    """
    Dict-backed RedisService stand-in.

    Every call yields to the event loop first, so concurrent store calls
    interleave. Scripts then run without yielding, as they do on a server.
    """

    def __init__(self):
        self.records = {}
        self.zsets = defaultdict(dict)
        self.sets = defaultdict(set)

    def key(self, *parts):
        return ":".join(("rideguard",) + parts)

    async def get_json(self, key):
        await asyncio.sleep(0)
        raw = self.records.get(key)
        return json.loads(raw) if raw else None

    async def set_json(self, key, value, ttl=None):
        await asyncio.sleep(0)
        self.records[key] = json.dumps(value)

    async def sadd(self, key, *members):
        await asyncio.sleep(0)
        self.sets[key].update(members)

    async def zadd(self, key, mapping):
        await asyncio.sleep(0)
        self.zsets[key].update(mapping)

    async def zrem(self, key, *members):
        await asyncio.sleep(0)
        for member in members:
            self.zsets[key].pop(member, None)

    async def eval_script(self, source, keys, args):
        await asyncio.sleep(0)
        raw = self.records.get(keys[0])
        record = json.loads(raw) if raw else None

        if source == DEACTIVATE_SCRIPT:
            if not record or not record["is_active"]:
                return 0
            record.update(is_active=False, updated_at=args[1])
            self.records[keys[0]] = json.dumps(record)
            self.zsets[keys[1]].pop(args[0], None)
            return 1

        assert source == UPDATE_ACTIVE_SCRIPT
        if not record or not record["is_active"]:
            return None
        record["updated_at"] = args[1]
        if args[2]:
            record["last_activity"] = args[2]
            self.zsets[keys[2]][args[0]] = args[3]
        if args[4]:
            record["expires_at"] = args[4]
            self.zsets[keys[1]][args[0]] = args[5]
        self.records[keys[0]] = json.dumps(record)
        return self.records[keys[0]]


class TestRedisSessionStoreConcurrency:

    @pytest.mark.parametrize("deactivate_first", [True, False])
    async def test_concurrent_touch_cannot_reactivate(self, deactivate_first):
        redis = ScriptedRedis()
        store = RedisSessionStore(redis)
        session = make_session()
        await store.insert(session)

        logout = store.deactivate([session.session_id])
        touch = store.update_active(session.session_id, last_activity=utcnow())
        calls = (logout, touch) if deactivate_first else (touch, logout)
        await asyncio.gather(*calls)

        stored = await store.get(session.session_id)
        assert stored.is_active is False
        assert session.session_id not in redis.zsets["rideguard:sessions:active"]

    async def test_touch_after_logout_returns_none(self):
        store = RedisSessionStore(ScriptedRedis())
        session = make_session()
        await store.insert(session)
        await store.deactivate([session.session_id])

        assert await store.update_active(session.session_id, expires_at=utcnow() + timedelta(hours=1)) is None
        assert (await store.get(session.session_id)).is_active is False

    async def test_deactivate_is_idempotent(self):
        store = RedisSessionStore(ScriptedRedis())
        session = make_session()
        await store.insert(session)

        assert await store.deactivate([session.session_id]) == 1
        assert await store.deactivate([session.session_id, "missing"]) == 0
