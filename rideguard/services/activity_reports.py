# rideguard/services/activity_reports.py
"""
Read-side helpers over an activity store: paginated search,
aggregate statistics, CSV export and retention cleanup.
"""
import csv
import io
import math
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from rideguard.models.activity import ActivityPage, ActivityQuery, ActivityRecord
from rideguard.services.activity_store import ActivityStore

import logging

logger = logging.getLogger(__name__)

STATS_PERIODS = {
    "1d": timedelta(days=1),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "all": None,
}

EXPORT_LIMIT = 5000
CSV_HEADER = [
    "Date", "Time", "Username", "Action", "Description",
    "IP Address", "Method", "Endpoint", "Status Code", "Severity",
]


async def query_activities(store: ActivityStore, filters: ActivityQuery) -> ActivityPage:
    activities, total = await store.query(filters)
    return ActivityPage(
        activities=activities,
        total=total,
        total_pages=math.ceil(total / filters.limit),
        current_page=filters.page,
    )


async def activity_stats(
    store: ActivityStore,
    period: str = "7d",
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Aggregate counts for a period ("1d", "7d", "30d", "90d" or "all").

    Raises:
        ValueError: unknown period
    """
    if period not in STATS_PERIODS:
        raise ValueError(f"Unknown period '{period}'")

    window = STATS_PERIODS[period]
    cutoff = (now or datetime.now(timezone.utc)) - window if window else None

    total = 0
    actions: Counter = Counter()
    severities: Counter = Counter()
    users: Counter = Counter()
    usernames: Dict[Optional[str], str] = {}
    daily: Counter = Counter()

    async for record in store.iter_since(cutoff):
        total += 1
        actions[record.action.value] += 1
        severities[record.severity.value] += 1
        users[record.user_id] += 1
        usernames.setdefault(record.user_id, record.username)
        daily[record.created_at.date().isoformat()] += 1

    return {
        "total_activities": total,
        "unique_users": len(users),
        "action_stats": [{"action": a, "count": c} for a, c in actions.most_common()],
        "severity_stats": [{"severity": s, "count": c} for s, c in severities.items()],
        "user_stats": [
            {"user_id": uid, "username": usernames[uid], "count": c}
            for uid, c in users.most_common(10)
        ],
        "daily_stats": [{"date": d, "count": daily[d]} for d in sorted(daily)],
    }


def export_csv(records: Iterable[ActivityRecord], limit: int = EXPORT_LIMIT) -> str:
    """Render records as CSV, at most `limit` rows."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)

    for index, record in enumerate(records):
        if index >= limit:
            break
        created = record.created_at.astimezone(timezone.utc)
        writer.writerow([
            created.date().isoformat(),
            created.strftime("%H:%M:%S"),
            record.username,
            record.action.value,
            record.description,
            record.ip_address,
            record.method,
            record.endpoint,
            record.status_code,
            record.severity.value,
        ])
    return buffer.getvalue()


async def export_activities(store: ActivityStore, filters: ActivityQuery) -> str:
    """Newest-first CSV of the records matching `filters`."""
    export_filters = filters.model_copy(update={"page": 1, "limit": EXPORT_LIMIT})
    activities, _ = await store.query(export_filters)
    return export_csv(activities)


async def cleanup_activities(
    store: ActivityStore,
    days: int = 90,
    now: Optional[datetime] = None
) -> int:
    """Delete records older than `days`; returns how many were removed."""
    if days < 0:
        raise ValueError("days must not be negative")
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    deleted = await store.delete_older_than(cutoff)
    logger.info(f"🧹 Deleted {deleted} activities older than {days} days")
    return deleted
