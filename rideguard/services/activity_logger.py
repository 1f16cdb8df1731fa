# rideguard/services/activity_logger.py
"""
Non-blocking activity logging.

Callers enqueue records and return immediately; a single worker task
persists them to the activity store. The queue is bounded: when it is
full the oldest pending record is dropped to make room. Persistence
errors are logged locally and never reach the caller.
"""
import asyncio
from typing import Any, Dict, Mapping, Optional
import logging

from rideguard.core.exceptions import ConfigurationError, LoggingFault, config_error, logging_fault
from rideguard.models.activity import ActivityAction, ActivityRecord, Severity
from rideguard.models.session import RequestContext
from rideguard.services.activity_store import ActivityStore

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_KEY_PARTS = ("password", "token", "secret", "otp", "authorization")


def redact_sensitive(data: Any) -> Any:
    """Copy of `data` with values of sensitive-looking keys replaced, at any depth."""
    if isinstance(data, Mapping):
        return {
            key: REDACTED if any(part in str(key).lower() for part in SENSITIVE_KEY_PARTS)
            else redact_sensitive(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item) for item in data]
    return data


class ActivityLogger:
    """
    Bounded-queue activity sink.

    Usage:
        activity_logger = ActivityLogger(store)
        await activity_logger.start()
        activity_logger.record_activity(user_id, username, ActivityAction.LOGIN, "Signed in")
        await activity_logger.stop()
    """

    def __init__(self, store: ActivityStore, queue_size: int = 1000):
        if queue_size < 1:
            raise ConfigurationError("queue_size must be at least 1", component="ActivityLogger")
        self.store = store
        self.queue_size = queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

        # Metrics
        self.recorded = 0
        self.dropped = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def _ensure_queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.queue_size)
        return self._queue

    async def start(self) -> None:
        if self.running:
            return
        self._ensure_queue()
        self._worker = asyncio.create_task(self._run(), name="activity-logger")
        logger.info(f"📝 Activity logger started (queue size {self.queue_size})")

    async def stop(self, timeout: float = 5.0) -> None:
        """Drain pending records within `timeout`, then stop the worker."""
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Activity logger stopped with {self._queue.qsize()} record(s) unsaved")

        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("📝 Activity logger stopped")

    def record(self, record: ActivityRecord) -> None:
        """Enqueue a record without waiting. Drops the oldest pending record when full."""
        queue = self._ensure_queue()
        while True:
            try:
                queue.put_nowait(record)
                return
            except asyncio.QueueFull:
                try:
                    oldest = queue.get_nowait()
                    queue.task_done()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1
                logger.warning(f"Activity queue full; dropped {oldest.action.value} record {oldest.id[:8]}")

    async def _persist(self, record: ActivityRecord) -> None:
        try:
            await self.store.append(record)
        except Exception as e:
            raise logging_fault(f"Activity logging error: {e}", action=record.action.value) from e

    async def _run(self) -> None:
        queue = self._queue
        while True:
            record = await queue.get()
            try:
                await self._persist(record)
                self.recorded += 1
            except LoggingFault as e:
                self.failed += 1
                logger.error(str(e))
            finally:
                queue.task_done()

    def record_activity(
        self,
        user_id: Optional[str],
        username: str,
        action: ActivityAction,
        description: str,
        context: Optional[RequestContext] = None,
        severity: Severity = Severity.LOW,
        additional_data: Optional[Dict[str, Any]] = None,
        status_code: int = 200,
        response_time_ms: float = 0,
    ) -> ActivityRecord:
        """Explicit logging of a user action; requests without context are logged as System."""
        record = ActivityRecord(
            user_id=user_id,
            username=username,
            action=action,
            description=description,
            ip_address=context.ip_address if context else "System",
            user_agent=context.user_agent if context else "System",
            method=(context.method if context and context.method else "SYSTEM"),
            endpoint=(context.endpoint if context and context.endpoint else "/system"),
            status_code=status_code,
            response_time_ms=response_time_ms,
            severity=severity,
            additional_data=additional_data or {},
        )
        self.record(record)
        return record

    def record_security_event(
        self,
        action: ActivityAction,
        description: str,
        context: Optional[RequestContext] = None,
        severity: Severity = Severity.HIGH,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> ActivityRecord:
        """Anonymous security event (failed login, injection attempt, ...)."""
        record = ActivityRecord(
            user_id=None,
            username="Anonymous",
            action=action,
            description=description,
            ip_address=context.ip_address if context else "Unknown",
            user_agent=context.user_agent if context else "Unknown",
            method=(context.method if context and context.method else "UNKNOWN"),
            endpoint=(context.endpoint if context and context.endpoint else "/unknown"),
            status_code=401,
            response_time_ms=0,
            severity=severity,
            additional_data=additional_data or {},
        )
        self.record(record)
        return record

    def get_metrics(self) -> Dict[str, int]:
        return {
            "recorded": self.recorded,
            "dropped": self.dropped,
            "failed": self.failed,
            "pending": self._queue.qsize() if self._queue else 0,
        }


# Global instance - initialized in the application lifespan
activity_logger: Optional[ActivityLogger] = None


def current_activity_logger() -> Optional[ActivityLogger]:
    """The global logger, or None before the application has started"""
    return activity_logger


def get_activity_logger() -> ActivityLogger:
    """
    Get the global activity logger instance.

    Follows FastAPI dependency injection pattern.
    """
    if activity_logger is None:
        raise config_error("ActivityLogger not initialized", "ActivityLogger")
    return activity_logger


def init_activity_logger(store: ActivityStore, queue_size: int = 1000) -> ActivityLogger:
    """Initialize the global activity logger"""
    global activity_logger
    activity_logger = ActivityLogger(store, queue_size)
    logger.info("📝 Initialized ActivityLogger")
    return activity_logger
