"""
Request sanitization middleware.

JSON bodies and query strings are cleaned before routing by an ASGI
middleware; path parameters only exist after routing and are cleaned
by the `sanitize_path_params` dependency.
"""

import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from rideguard.core.exceptions import SanitizationDepthError
from rideguard.models.activity import ActivityAction, Severity
from rideguard.models.session import RequestContext
from rideguard.services.activity_logger import current_activity_logger
from rideguard.services.sanitization_service import (
    RequestData,
    SanitizationPipeline,
    SanitizationResult,
    get_sanitization_pipeline,
)

logger = logging.getLogger(__name__)

INVALID_REQUEST = {"detail": "Invalid request"}


def _is_json(scope: Scope) -> bool:
    for name, value in scope.get("headers", []):
        if name == b"content-type":
            return value.split(b";")[0].strip().lower() == b"application/json"
    return False


def _record_telemetry(request: Request, result: SanitizationResult) -> None:
    activity_logger = current_activity_logger()
    if activity_logger is None or not (result.findings or result.removed_keys):
        return

    context = RequestContext.from_request(request)
    if result.findings:
        activity_logger.record_security_event(
            ActivityAction.XSS_ATTEMPT,
            "Potential XSS payload in request",
            context,
            severity=Severity.MEDIUM,
            additional_data={
                "suspicious": [
                    {"pattern": f.pattern, "location": f.location, "value": f.value}
                    for f in result.findings
                ]
            },
        )
    if result.removed_keys:
        activity_logger.record_security_event(
            ActivityAction.INJECTION_ATTEMPT,
            "Operator keys removed from request",
            context,
            severity=Severity.HIGH,
            additional_data={"removed_keys": result.removed_keys},
        )


class SanitizationMiddleware:
    """
    Pure ASGI middleware; rewrites the query string and JSON body in place.

    Fail-open on unexpected errors. Input nested past the depth limit
    gets a 400.
    """

    def __init__(self, app: ASGIApp, pipeline: Optional[SanitizationPipeline] = None):
        self.app = app
        self._pipeline = pipeline

    @property
    def pipeline(self) -> SanitizationPipeline:
        return self._pipeline or get_sanitization_pipeline()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        body = b""
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] != "http.request":
                # Client went away before sending the body
                await self.app(scope, _replay([message], receive), send)
                return
            body += message.get("body", b"")
            more_body = message.get("more_body", False)

        request = Request(scope)
        parsed: Any = None
        has_json = bool(body) and _is_json(scope)
        if has_json:
            try:
                parsed = json.loads(body)
            except RecursionError:
                await self._reject(request, scope, receive, send)
                return
            except ValueError:
                # Malformed JSON is left for the framework to report
                has_json = False

        query_pairs = parse_qsl(scope.get("query_string", b"").decode("latin-1"), keep_blank_values=True)

        try:
            result = self.pipeline.sanitize(RequestData(body=parsed, query=query_pairs))
        except SanitizationDepthError as e:
            logger.warning(f"Rejected request to {request.url.path}: {e}")
            await self._reject(request, scope, receive, send)
            return
        except Exception as e:
            logger.error(f"Sanitization error, passing request through: {e}", exc_info=True)
            await self.app(scope, _replay([_body_message(body)], receive), send)
            return

        _record_telemetry(request, result)

        scope["query_string"] = urlencode(result.query, doseq=True).encode("latin-1", errors="ignore")
        if has_json:
            body = json.dumps(result.body).encode("utf-8")
            scope["headers"] = [
                (name, value) for name, value in scope.get("headers", [])
                if name != b"content-length"
            ] + [(b"content-length", str(len(body)).encode())]

        await self.app(scope, _replay([_body_message(body)], receive), send)

    async def _reject(self, request: Request, scope: Scope, receive: Receive, send: Send) -> None:
        activity_logger = current_activity_logger()
        if activity_logger is not None:
            activity_logger.record_security_event(
                ActivityAction.INJECTION_ATTEMPT,
                "Request nested beyond the sanitizer depth limit",
                RequestContext.from_request(request),
                severity=Severity.MEDIUM,
                additional_data={"max_depth": self.pipeline.max_depth},
            )
        response = JSONResponse(status_code=400, content=INVALID_REQUEST)
        await response(scope, receive, send)


def _body_message(body: bytes) -> Message:
    return {"type": "http.request", "body": body, "more_body": False}


def _replay(messages: List[Message], receive: Receive) -> Receive:
    pending = list(messages)

    async def replay_receive() -> Message:
        if pending:
            return pending.pop(0)
        return await receive()

    return replay_receive


async def sanitize_path_params(request: Request) -> Dict[str, Any]:
    """
    FastAPI dependency cleaning the resolved path parameters.

    Register globally, e.g. FastAPI(dependencies=[Depends(sanitize_path_params)]),
    so it runs before the endpoint's own parameters are read.
    """
    params = dict(request.path_params)
    if not params:
        return params

    try:
        result = get_sanitization_pipeline().sanitize(RequestData(path_params=params))
    except Exception as e:
        logger.error(f"Path parameter sanitization failed open: {e}")
        return params

    _record_telemetry(request, result)
    request.scope["path_params"] = result.path_params
    return result.path_params
