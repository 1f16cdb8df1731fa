# rideguard/core/security/session_manager.py
"""
Session lifecycle management.

Enforces the concurrent-session cap at creation time, sliding expiration
through `refresh_if_needed`, lazy inactivity expiry on validation and a
periodic sweep of stale records.

Failure policy:
- create_session: any store error is fatal (SessionCreationError)
- everything else: store errors are logged and read as
  "not valid" / "nothing to do"
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING
import logging

from rideguard.core.exceptions import ConfigurationError, SessionCreationError, config_error, store_error
from rideguard.core.security.credentials import CredentialService
from rideguard.models.activity import ActivityAction, Severity
from rideguard.models.session import (
    RefreshResult,
    RequestContext,
    Session,
    SessionGrant,
    SessionValidation,
    generate_session_id,
    parse_user_agent,
    utcnow,
)
from rideguard.services.session_store import SessionStore

if TYPE_CHECKING:
    from rideguard.core.config import Settings
    from rideguard.services.activity_logger import ActivityLogger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionConfig:
    """Lifecycle constants, passed explicitly so tests and environments can override them"""
    max_age: timedelta = timedelta(hours=24)
    remember_me_max_age: timedelta = timedelta(days=30)
    inactivity_timeout: timedelta = timedelta(minutes=30)
    max_concurrent_sessions: int = 5
    refresh_threshold: timedelta = timedelta(minutes=15)
    store_timeout: timedelta = timedelta(seconds=5)

    def __post_init__(self):
        if self.max_concurrent_sessions < 1:
            raise ConfigurationError(
                "max_concurrent_sessions must be at least 1",
                component="SessionConfig"
            )
        if self.refresh_threshold >= self.max_age:
            raise ConfigurationError(
                "refresh_threshold must be shorter than max_age",
                component="SessionConfig"
            )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SessionConfig":
        return cls(
            max_age=timedelta(hours=settings.SESSION_MAX_AGE_HOURS),
            remember_me_max_age=timedelta(days=settings.SESSION_REMEMBER_ME_DAYS),
            inactivity_timeout=timedelta(minutes=settings.SESSION_INACTIVITY_MINUTES),
            max_concurrent_sessions=settings.MAX_CONCURRENT_SESSIONS,
            refresh_threshold=timedelta(minutes=settings.SESSION_REFRESH_THRESHOLD_MINUTES),
            store_timeout=timedelta(seconds=settings.STORE_TIMEOUT_SECONDS),
        )

    def duration_for(self, remember_me: bool) -> timedelta:
        return self.remember_me_max_age if remember_me else self.max_age


class SessionManager:
    """
    Creates, validates, refreshes and invalidates user sessions.

    Design decisions:
    1. Storage behind SessionStore so Redis and in-memory are interchangeable
    2. Validation never raises; every failure is plain "not valid"
    3. The "count active, evict, insert" sequence runs under a per-user lock
    """

    def __init__(
        self,
        store: SessionStore,
        credentials: CredentialService,
        config: Optional[SessionConfig] = None,
        activity_logger: Optional["ActivityLogger"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.credentials = credentials
        self.config = config or SessionConfig()
        self.activity_logger = activity_logger
        self.clock = clock

        # Metrics for monitoring
        self._creation_count = 0
        self._eviction_count = 0
        self._validation_failures = 0
        self._swept_count = 0

    async def _store_call(self, operation: str, call: Awaitable[Any]) -> Any:
        """Run a store call under the configured timeout; timeouts become StoreError."""
        try:
            return await asyncio.wait_for(call, timeout=self.config.store_timeout.total_seconds())
        except asyncio.TimeoutError:
            raise store_error(
                f"Session store timed out during {operation}",
                self.store.store_name,
                operation
            )

    def _emit(
        self,
        action: ActivityAction,
        description: str,
        user_id: Optional[str],
        context: Optional[RequestContext] = None,
        severity: Severity = Severity.LOW,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.activity_logger is None:
            return
        self.activity_logger.record_activity(
            user_id=user_id,
            username=user_id or "Anonymous",
            action=action,
            description=description,
            context=context,
            severity=severity,
            additional_data=additional_data,
        )

    async def create_session(
        self,
        user_id: str,
        context: RequestContext,
        remember_me: bool = False
    ) -> SessionGrant:
        """
        Create a session for an already authenticated user.

        Evicts the oldest active sessions so that, including the new one,
        the user never holds more than `max_concurrent_sessions`.

        Raises:
            SessionCreationError: on any store or signing failure
        """
        cap = self.config.max_concurrent_sessions
        duration = self.config.duration_for(remember_me)
        device_info = parse_user_agent(context.user_agent)
        evicted: List[Session] = []

        try:
            async with self.store.user_lock(user_id):
                active = await self._store_call(
                    "find_by_user", self.store.find_by_user(user_id, active_only=True)
                )
                active.sort(key=lambda s: s.created_at, reverse=True)

                if len(active) >= cap:
                    evicted = active[cap - 1:]
                    await self._store_call(
                        "deactivate", self.store.deactivate([s.session_id for s in evicted])
                    )

                now = self.clock()
                session = Session(
                    session_id=generate_session_id(),
                    user_id=user_id,
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    device_info=device_info,
                    is_active=True,
                    remember_me=remember_me,
                    last_activity=now,
                    created_at=now,
                    updated_at=now,
                    expires_at=now + duration,
                )
                await self._store_call("insert", self.store.insert(session))

            token = self.credentials.issue(user_id, session.session_id, duration)

        except Exception as e:
            logger.error(f"Session creation failed for user {user_id}: {e}")
            raise SessionCreationError(
                user_id=user_id,
                details={'error': str(e), 'error_type': type(e).__name__}
            ) from e

        self._creation_count += 1
        kind = "extended" if remember_me else "standard"
        logger.info(f"🔐 Created {kind} session {session.session_id[:8]}... for user {user_id}")

        if evicted:
            self._eviction_count += len(evicted)
            logger.info(f"Evicted {len(evicted)} session(s) of user {user_id} (cap {cap})")
            self._emit(
                ActivityAction.SESSION_EVICTED,
                f"Concurrent-session cap reached; {len(evicted)} oldest session(s) ended",
                user_id,
                context,
                severity=Severity.MEDIUM,
                additional_data={"evicted": [s.session_id[:8] for s in evicted]},
            )
        self._emit(
            ActivityAction.SESSION_CREATED,
            f"Created {kind} session on {device_info.browser}/{device_info.os}",
            user_id,
            context,
        )

        return SessionGrant(token=token, session_id=session.session_id, session=session)

    async def validate_session(self, session_id: str, user_id: str) -> SessionValidation:
        """
        Check that a session is active, unexpired and owned by `user_id`.

        Idle sessions are deactivated on the spot (lazy expiry). A valid
        session gets its last_activity bumped. Never raises.
        """
        invalid = SessionValidation(valid=False)
        try:
            session = await self._store_call("get", self.store.get(session_id))
            now = self.clock()

            if (
                session is None
                or session.user_id != user_id
                or not session.is_active
                or session.is_expired(now)
            ):
                self._validation_failures += 1
                return invalid

            if session.is_idle(self.config.inactivity_timeout, now):
                await self._store_call("deactivate", self.store.deactivate([session_id]))
                self._validation_failures += 1
                logger.info(f"⏰ Session {session_id[:8]}... expired after inactivity")
                self._emit(
                    ActivityAction.SESSION_EXPIRED,
                    "Session ended after inactivity timeout",
                    user_id,
                )
                return invalid

            updated = await self._store_call(
                "update_active", self.store.update_active(session_id, last_activity=now)
            )
            if updated is None:
                # Deactivated concurrently
                self._validation_failures += 1
                return invalid

            return SessionValidation(valid=True, session=updated)

        except Exception as e:
            self._validation_failures += 1
            logger.warning(f"Session validation failed for {session_id[:8]}...: {e}")
            return invalid

    async def refresh_if_needed(self, session: Session) -> RefreshResult:
        """
        Sliding expiration.

        Inside the refresh window, extend `expires_at` by a full session
        duration and issue a new credential for the same session.
        """
        now = self.clock()
        if session.time_to_expiry(now) >= self.config.refresh_threshold:
            return RefreshResult(refreshed=False)

        duration = self.config.duration_for(session.remember_me)
        try:
            updated = await self._store_call(
                "update_active",
                self.store.update_active(session.session_id, expires_at=now + duration)
            )
        except Exception as e:
            logger.warning(f"Session refresh failed for {session.session_id[:8]}...: {e}")
            return RefreshResult(refreshed=False)

        if updated is None:
            return RefreshResult(refreshed=False)

        session.expires_at = updated.expires_at
        token = self.credentials.issue(session.user_id, session.session_id, duration)
        logger.debug(f"🔄 Refreshed session {session.session_id[:8]}...")
        return RefreshResult(refreshed=True, new_token=token)

    async def invalidate_session(self, session_id: str, user_id: str) -> bool:
        """Mark one session inactive. Idempotent; True when the user owns such a session."""
        try:
            session = await self._store_call("get", self.store.get(session_id))
            if session is None or session.user_id != user_id:
                return False

            changed = await self._store_call("deactivate", self.store.deactivate([session_id]))
            if changed:
                logger.debug(f"🗑️ Invalidated session {session_id[:8]}...")
                self._emit(ActivityAction.SESSION_REVOKED, "Session ended by user", user_id)
            return True

        except Exception as e:
            logger.warning(f"Session invalidation failed for {session_id[:8]}...: {e}")
            return False

    async def invalidate_all_sessions(self, user_id: str) -> bool:
        """Log out everywhere, e.g. after a password change."""
        try:
            changed = await self._store_call("deactivate_user", self.store.deactivate_user(user_id))
        except Exception as e:
            logger.warning(f"Invalidating sessions of user {user_id} failed: {e}")
            return False

        logger.info(f"Invalidated {changed} session(s) of user {user_id}")
        if changed:
            self._emit(
                ActivityAction.SESSION_REVOKED,
                f"All sessions ended ({changed})",
                user_id,
                severity=Severity.MEDIUM,
            )
        return True

    async def list_active_sessions(self, user_id: str) -> List[Session]:
        """Active, unexpired sessions, most recent activity first."""
        try:
            sessions = await self._store_call(
                "find_by_user", self.store.find_by_user(user_id, active_only=True)
            )
        except Exception as e:
            logger.warning(f"Listing sessions of user {user_id} failed: {e}")
            return []

        now = self.clock()
        live = [s for s in sessions if not s.is_expired(now)]
        live.sort(key=lambda s: s.last_activity, reverse=True)
        return live

    async def sweep_expired_sessions(self) -> int:
        """Delete expired and idle records; returns how many were removed."""
        now = self.clock()
        try:
            removed = await self._store_call(
                "delete_stale",
                self.store.delete_stale(now, now - self.config.inactivity_timeout)
            )
        except Exception as e:
            logger.error(f"Failed to clean expired sessions: {e}")
            return 0

        self._swept_count += removed
        if removed:
            logger.info(f"🧹 Cleaned {removed} expired/inactive sessions")
        return removed

    def get_metrics(self) -> Dict[str, int]:
        return {
            "total_created": self._creation_count,
            "total_evicted": self._eviction_count,
            "validation_failures": self._validation_failures,
            "swept": self._swept_count,
        }


class SessionSweeper:
    """Runs `sweep_expired_sessions` periodically as a background task"""

    def __init__(self, manager: SessionManager, interval: timedelta = timedelta(hours=1)):
        self.manager = manager
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="session-sweeper")
        logger.info(f"Session sweeper started (every {self.interval})")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            await self.manager.sweep_expired_sessions()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Session sweeper stopped")


# Global instance - initialized in the application lifespan
session_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """
    Get the global session manager instance.

    Follows FastAPI dependency injection pattern.
    """
    if session_manager is None:
        raise config_error("SessionManager not initialized", "SessionManager")
    return session_manager


def init_session_manager(
    store: SessionStore,
    credentials: CredentialService,
    config: Optional[SessionConfig] = None,
    activity_logger: Optional["ActivityLogger"] = None,
) -> SessionManager:
    """Initialize the global session manager"""
    global session_manager
    session_manager = SessionManager(store, credentials, config, activity_logger)
    logger.info("🔐 Initialized SessionManager")
    return session_manager
