# rideguard/services/activity_store.py
"""
Append-only activity stores.

Records are written once and removed only by retention cleanup.
Lookups filter by user, action, severity, time range and free text.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple
import logging

from rideguard.models.activity import ActivityAction, ActivityQuery, ActivityRecord, Severity
from rideguard.services.redis_service import RedisService

logger = logging.getLogger(__name__)


class ActivityStore(ABC):
    store_name = "activity"

    @abstractmethod
    async def append(self, record: ActivityRecord) -> None:
        pass

    @abstractmethod
    async def query(self, filters: ActivityQuery) -> Tuple[List[ActivityRecord], int]:
        """One page of matching records, newest first, plus the total match count."""

    @abstractmethod
    def iter_since(self, cutoff: Optional[datetime] = None) -> AsyncIterator[ActivityRecord]:
        """Records created at or after `cutoff` (all when None), oldest first."""

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int:
        pass


def _page(records: List[ActivityRecord], filters: ActivityQuery) -> List[ActivityRecord]:
    start = (filters.page - 1) * filters.limit
    return records[start:start + filters.limit]


class InMemoryActivityStore(ActivityStore):
    """Process-local store for development and tests"""

    def __init__(self):
        self._records: List[ActivityRecord] = []

    async def append(self, record: ActivityRecord) -> None:
        self._records.append(record)

    async def query(self, filters: ActivityQuery) -> Tuple[List[ActivityRecord], int]:
        matched = [r for r in self._records if filters.matches(r)]
        matched.sort(key=lambda r: r.created_at, reverse=True)
        return _page(matched, filters), len(matched)

    async def iter_since(self, cutoff: Optional[datetime] = None) -> AsyncIterator[ActivityRecord]:
        for record in sorted(self._records, key=lambda r: r.created_at):
            if cutoff is None or record.created_at >= cutoff:
                yield record

    async def delete_older_than(self, cutoff: datetime) -> int:
        before = len(self._records)
        self._records = [r for r in self._records if r.created_at >= cutoff]
        return before - len(self._records)

    def __len__(self) -> int:
        return len(self._records)


class RedisActivityStore(ActivityStore):
    """
    Redis-backed store.

    Layout (under the service prefix):
    - activity:{id}                   JSON record, no TTL
    - activities:by_time              sorted set id -> created_at timestamp
    - activities:by_user:{uid}        same, per user (records with a user only)
    - activities:by_action:{action}   same, per action
    - activities:by_severity:{sev}    same, per severity

    Queries walk the narrowest index that applies. When that index alone
    answers the filters, pages are sliced on the server.
    """

    BATCH_SIZE = 500

    def __init__(self, redis_service: RedisService):
        self.redis = redis_service

    def _record_key(self, record_id: str) -> str:
        return self.redis.key("activity", record_id)

    @property
    def _index_key(self) -> str:
        return self.redis.key("activities", "by_time")

    def _user_index(self, user_id: str) -> str:
        return self.redis.key("activities", "by_user", user_id)

    def _action_index(self, action: ActivityAction) -> str:
        return self.redis.key("activities", "by_action", action.value)

    def _severity_index(self, severity: Severity) -> str:
        return self.redis.key("activities", "by_severity", severity.value)

    def _indexes_for(self, record: ActivityRecord) -> List[str]:
        keys = [self._index_key, self._action_index(record.action), self._severity_index(record.severity)]
        if record.user_id:
            keys.append(self._user_index(record.user_id))
        return keys

    def _pick_index(self, filters: ActivityQuery) -> Tuple[str, bool]:
        """The index to scan, and whether it covers every filter besides the time range."""
        narrowing = [
            (filters.user_id, self._user_index),
            (filters.action, self._action_index),
            (filters.severity, self._severity_index),
        ]
        active = [(value, index) for value, index in narrowing if value]
        if not active:
            return self._index_key, not filters.search
        value, index = active[0]
        return index(value), len(active) == 1 and not filters.search

    async def append(self, record: ActivityRecord) -> None:
        await self.redis.set_json(self._record_key(record.id), record.model_dump(mode="json"))
        score = record.created_at.timestamp()
        for key in self._indexes_for(record):
            await self.redis.zadd(key, {record.id: score})

    async def _load(self, ids: List[str]) -> AsyncIterator[ActivityRecord]:
        for start in range(0, len(ids), self.BATCH_SIZE):
            batch = ids[start:start + self.BATCH_SIZE]
            for data in await self.redis.mget_json([self._record_key(i) for i in batch]):
                if data:
                    yield ActivityRecord.model_validate(data)

    async def query(self, filters: ActivityQuery) -> Tuple[List[ActivityRecord], int]:
        upper = filters.end_date.timestamp() if filters.end_date else "+inf"
        lower = filters.start_date.timestamp() if filters.start_date else "-inf"
        index, covered = self._pick_index(filters)

        if covered:
            total = await self.redis.zcount(index, lower, upper)
            ids = await self.redis.zrevrangebyscore(
                index, upper, lower, offset=(filters.page - 1) * filters.limit, count=filters.limit
            )
            return [r async for r in self._load(ids)], total

        ids = await self.redis.zrevrangebyscore(index, upper, lower)
        matched = [r async for r in self._load(ids) if filters.matches(r)]
        return _page(matched, filters), len(matched)

    async def iter_since(self, cutoff: Optional[datetime] = None) -> AsyncIterator[ActivityRecord]:
        lower = cutoff.timestamp() if cutoff else "-inf"
        ids = await self.redis.zrangebyscore(self._index_key, lower, "+inf")
        async for record in self._load(ids):
            yield record

    async def delete_older_than(self, cutoff: datetime) -> int:
        below = f"({cutoff.timestamp()}"
        ids = await self.redis.zrangebyscore(self._index_key, "-inf", below)
        if not ids:
            return 0

        for start in range(0, len(ids), self.BATCH_SIZE):
            batch = ids[start:start + self.BATCH_SIZE]
            by_user: Dict[str, List[str]] = {}
            for record_id, data in zip(batch, await self.redis.mget_json([self._record_key(i) for i in batch])):
                if data and data.get("user_id"):
                    by_user.setdefault(data["user_id"], []).append(record_id)
            for user_id, record_ids in by_user.items():
                await self.redis.zrem(self._user_index(user_id), *record_ids)
            await self.redis.delete(*[self._record_key(i) for i in batch])
            await self.redis.zrem(self._index_key, *batch)

        # Action and severity keys are finite; trim them by score
        for key in [self._action_index(a) for a in ActivityAction] + [self._severity_index(s) for s in Severity]:
            await self.redis.zremrangebyscore(key, "-inf", below)

        logger.info(f"Deleted {len(ids)} activity records older than {cutoff.isoformat()}")
        return len(ids)
