"""
Implicit activity logging.

Routes opt in with the `track_activity` dependency. The middleware
records the outcome once the response status and timing are known,
for authenticated requests only.
"""

import json
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

from fastapi import Request, Response

from rideguard.models.activity import ActivityAction, Severity
from rideguard.models.session import RequestContext
from rideguard.services.activity_logger import REDACTED, current_activity_logger, redact_sensitive

logger = logging.getLogger(__name__)


@dataclass
class PendingActivity:
    action: ActivityAction
    description: str
    severity: Severity
    additional_data: Dict[str, Any] = field(default_factory=dict)


def track_activity(
    action: ActivityAction,
    description: str,
    severity: Severity = Severity.LOW
) -> Callable:
    """
    Dependency factory marking a route for activity logging.

    Usage:
        @app.post("/vehicles", dependencies=[Depends(track_activity(ActivityAction.VEHICLE_CREATE, "Created vehicle"))])
    """
    async def dependency(request: Request) -> None:
        if "PASSWORD" in action.value:
            body: Any = REDACTED
        else:
            body = None
            raw = await request.body()
            if raw:
                try:
                    body = redact_sensitive(json.loads(raw))
                except ValueError:
                    body = None

        request.state.pending_activity = PendingActivity(
            action=action,
            description=description,
            severity=severity,
            additional_data={
                "body": body,
                "params": redact_sensitive(dict(request.path_params)),
                "query": redact_sensitive(dict(request.query_params)),
            },
        )

    return dependency


class ActivityLoggingMiddleware:
    """HTTP middleware completing activities marked by `track_activity`"""

    async def __call__(self, request: Request, call_next: Callable) -> Response:
        # Set up front so downstream handlers write into the same state
        request.state.pending_activity = None
        request.state.user_id = None

        start_time = time.time()
        response = await call_next(request)
        response_time_ms = (time.time() - start_time) * 1000

        pending = request.state.pending_activity
        user_id = request.state.user_id
        if pending is None or user_id is None:
            return response

        activity_logger = current_activity_logger()
        if activity_logger is None:
            logger.debug(f"No activity logger; {pending.action.value} not recorded")
            return response

        activity_logger.record_activity(
            user_id=user_id,
            username=getattr(request.state, "username", None) or user_id,
            action=pending.action,
            description=pending.description,
            context=RequestContext.from_request(request),
            severity=pending.severity,
            additional_data=pending.additional_data,
            status_code=response.status_code,
            response_time_ms=round(response_time_ms, 2),
        )
        return response
