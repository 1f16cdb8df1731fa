# rideguard/services/session_store.py
"""
Session stores.

The session manager reaches storage only through `SessionStore`:
records keyed by session id, a (user, active) lookup, an expiry index
for the sweep, and a per-user advisory lock for the create sequence.
"""
import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncContextManager, AsyncIterator, Dict, Iterable, List, Optional, Tuple
import logging

from rideguard.models.session import Session, utcnow
from rideguard.services.redis_service import RedisService

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Keyed session storage used by the session manager"""

    store_name = "session"

    @abstractmethod
    async def insert(self, session: Session) -> None:
        """Persist a new session record."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]:
        """Return the record for `session_id`, or None."""

    @abstractmethod
    async def update_active(
        self,
        session_id: str,
        last_activity: Optional[datetime] = None,
        expires_at: Optional[datetime] = None
    ) -> Optional[Session]:
        """
        Update timestamps of a session that is still active.

        Returns the updated record, or None when the session is gone or
        inactive. Never flips an inactive record back to active.
        """

    @abstractmethod
    async def find_by_user(self, user_id: str, active_only: bool = True) -> List[Session]:
        """All records owned by `user_id`, unordered."""

    @abstractmethod
    async def deactivate(self, session_ids: Iterable[str]) -> int:
        """Mark the given sessions inactive; returns how many were changed."""

    @abstractmethod
    async def deactivate_user(self, user_id: str) -> int:
        """Mark every session of a user inactive."""

    @abstractmethod
    async def delete_stale(self, now: datetime, idle_cutoff: datetime) -> int:
        """
        Delete records past `expires_at`, or active with
        `last_activity` before `idle_cutoff`. Idempotent.
        """

    @abstractmethod
    def user_lock(self, user_id: str) -> AsyncContextManager:
        """Advisory lock serializing the create sequence for one user."""


class InMemorySessionStore(SessionStore):
    """
    Process-local store for development and tests.

    Records are copied in and out so callers never share state with the store.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        # user_id -> (lock, number of holders and waiters)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    async def insert(self, session: Session) -> None:
        if session.session_id in self._sessions:
            raise ValueError(f"Duplicate session id {session.session_id[:8]}...")
        self._sessions[session.session_id] = session.model_copy(deep=True)

    async def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def update_active(
        self,
        session_id: str,
        last_activity: Optional[datetime] = None,
        expires_at: Optional[datetime] = None
    ) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None or not session.is_active:
            return None
        if last_activity is not None:
            session.last_activity = last_activity
        if expires_at is not None:
            session.expires_at = expires_at
        session.updated_at = utcnow()
        return session.model_copy(deep=True)

    async def find_by_user(self, user_id: str, active_only: bool = True) -> List[Session]:
        return [
            s.model_copy(deep=True) for s in self._sessions.values()
            if s.user_id == user_id and (s.is_active or not active_only)
        ]

    async def deactivate(self, session_ids: Iterable[str]) -> int:
        changed = 0
        now = utcnow()
        for sid in session_ids:
            session = self._sessions.get(sid)
            if session and session.is_active:
                session.is_active = False
                session.updated_at = now
                changed += 1
        return changed

    async def deactivate_user(self, user_id: str) -> int:
        ids = [s.session_id for s in self._sessions.values() if s.user_id == user_id]
        return await self.deactivate(ids)

    async def delete_stale(self, now: datetime, idle_cutoff: datetime) -> int:
        stale = [
            sid for sid, s in self._sessions.items()
            if s.expires_at <= now or (s.is_active and s.last_activity < idle_cutoff)
        ]
        for sid in stale:
            self._sessions.pop(sid, None)
        return len(stale)

    def user_lock(self, user_id: str) -> AsyncContextManager:
        return self._hold_user_lock(user_id)

    @asynccontextmanager
    async def _hold_user_lock(self, user_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(user_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[user_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[user_id]
            if users == 1:
                del self._locks[user_id]
            else:
                self._locks[user_id] = (lock, users - 1)


# Check-and-write scripts; a record that is inactive when the script runs
# is left untouched.
#   KEYS: session record, expiry index, active index
#   ARGV: session id, updated_at, last_activity, its score, expires_at, its score, ttl
UPDATE_ACTIVE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then return false end
local session = cjson.decode(raw)
if not session['is_active'] then return false end
session['updated_at'] = ARGV[2]
if ARGV[3] ~= '' then
    session['last_activity'] = ARGV[3]
    redis.call('ZADD', KEYS[3], ARGV[4], ARGV[1])
end
local encoded
if ARGV[5] ~= '' then
    session['expires_at'] = ARGV[5]
    redis.call('ZADD', KEYS[2], ARGV[6], ARGV[1])
    encoded = cjson.encode(session)
    redis.call('SET', KEYS[1], encoded, 'EX', ARGV[7])
else
    encoded = cjson.encode(session)
    redis.call('SET', KEYS[1], encoded, 'KEEPTTL')
end
return encoded
"""

#   KEYS: session record, active index
#   ARGV: session id, updated_at
DEACTIVATE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then return 0 end
local session = cjson.decode(raw)
if not session['is_active'] then return 0 end
session['is_active'] = false
session['updated_at'] = ARGV[2]
redis.call('SET', KEYS[1], cjson.encode(session), 'KEEPTTL')
redis.call('ZREM', KEYS[2], ARGV[1])
return 1
"""


class RedisSessionStore(SessionStore):
    """
    Redis-backed store.

    Layout (all keys under the service prefix):
    - session:{id}          JSON record, TTL at expires_at
    - user:{uid}:sessions   set of the user's session ids
    - sessions:expiry       sorted set id -> expires_at
    - sessions:active       sorted set id -> last_activity, active sessions only
    """

    def __init__(self, redis_service: RedisService, lock_timeout: float = 10.0):
        self.redis = redis_service
        self.lock_timeout = lock_timeout

    def _session_key(self, session_id: str) -> str:
        return self.redis.key("session", session_id)

    def _user_key(self, user_id: str) -> str:
        return self.redis.key("user", user_id, "sessions")

    @property
    def _expiry_key(self) -> str:
        return self.redis.key("sessions", "expiry")

    @property
    def _active_key(self) -> str:
        return self.redis.key("sessions", "active")

    async def _write(self, session: Session) -> None:
        ttl = int(session.time_to_expiry().total_seconds())
        await self.redis.set_json(
            self._session_key(session.session_id),
            session.model_dump(mode="json"),
            ttl=max(ttl, 1)
        )
        await self.redis.zadd(self._expiry_key, {session.session_id: session.expires_at.timestamp()})
        if session.is_active:
            await self.redis.zadd(self._active_key, {session.session_id: session.last_activity.timestamp()})
        else:
            await self.redis.zrem(self._active_key, session.session_id)

    async def insert(self, session: Session) -> None:
        await self._write(session)
        await self.redis.sadd(self._user_key(session.user_id), session.session_id)

    async def get(self, session_id: str) -> Optional[Session]:
        data = await self.redis.get_json(self._session_key(session_id))
        return Session.model_validate(data) if data else None

    async def update_active(
        self,
        session_id: str,
        last_activity: Optional[datetime] = None,
        expires_at: Optional[datetime] = None
    ) -> Optional[Session]:
        ttl = ""
        if expires_at is not None:
            ttl = max(int((expires_at - utcnow()).total_seconds()), 1)
        result = await self.redis.eval_script(
            UPDATE_ACTIVE_SCRIPT,
            [self._session_key(session_id), self._expiry_key, self._active_key],
            [
                session_id,
                utcnow().isoformat(),
                last_activity.isoformat() if last_activity else "",
                last_activity.timestamp() if last_activity else "",
                expires_at.isoformat() if expires_at else "",
                expires_at.timestamp() if expires_at else "",
                ttl,
            ],
        )
        return Session.model_validate_json(result) if result else None

    async def find_by_user(self, user_id: str, active_only: bool = True) -> List[Session]:
        ids = sorted(await self.redis.smembers(self._user_key(user_id)))
        records = await self.redis.mget_json([self._session_key(sid) for sid in ids])

        sessions = []
        gone = []
        for sid, data in zip(ids, records):
            if data is None:
                gone.append(sid)
                continue
            session = Session.model_validate(data)
            if session.is_active or not active_only:
                sessions.append(session)

        if gone:
            # Records expired through their TTL; drop the dangling index entries
            await self.redis.srem(self._user_key(user_id), *gone)
        return sessions

    async def deactivate(self, session_ids: Iterable[str]) -> int:
        changed = 0
        for sid in session_ids:
            changed += int(await self.redis.eval_script(
                DEACTIVATE_SCRIPT,
                [self._session_key(sid), self._active_key],
                [sid, utcnow().isoformat()],
            ))
        return changed

    async def deactivate_user(self, user_id: str) -> int:
        sessions = await self.find_by_user(user_id, active_only=True)
        return await self.deactivate(s.session_id for s in sessions)

    async def delete_stale(self, now: datetime, idle_cutoff: datetime) -> int:
        expired = await self.redis.zrangebyscore(self._expiry_key, "-inf", now.timestamp())
        idle = await self.redis.zrangebyscore(self._active_key, "-inf", f"({idle_cutoff.timestamp()}")
        stale = sorted(set(expired) | set(idle))
        if not stale:
            return 0

        records = await self.redis.mget_json([self._session_key(sid) for sid in stale])
        for sid, data in zip(stale, records):
            if data and data.get("user_id"):
                await self.redis.srem(self._user_key(data["user_id"]), sid)

        await self.redis.delete(*[self._session_key(sid) for sid in stale])
        await self.redis.zrem(self._expiry_key, *stale)
        await self.redis.zrem(self._active_key, *stale)
        return len(stale)

    def user_lock(self, user_id: str) -> AsyncContextManager:
        return self.redis.lock(self.redis.key("lock", "user", user_id), timeout=self.lock_timeout)
