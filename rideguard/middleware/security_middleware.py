"""
Security middleware for the RideGuard API
Adds security headers and request timing
"""

from fastapi import Request, Response
import time
import logging
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline' 'unsafe-eval'; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data: blob:; "
    "font-src 'self' data:; "
    "connect-src 'self'; "
    "frame-src 'none'; "
    "object-src 'none'; "
    "base-uri 'self';"
)

SECURITY_HEADERS = {
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


class SecurityMiddleware:
    """Security headers and slow-request monitoring"""

    def __init__(
        self,
        slow_request_seconds: float = 1.0,
        extra_headers: Optional[Dict[str, str]] = None
    ):
        self.slow_request_seconds = slow_request_seconds
        self.headers = {**SECURITY_HEADERS, **(extra_headers or {})}

    async def __call__(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        for name, value in self.headers.items():
            response.headers[name] = value
        response.headers["X-Process-Time"] = str(process_time)

        # Log slow requests
        if process_time > self.slow_request_seconds:
            logger.warning(f"⏱️ Slow request: {request.url.path} took {process_time:.2f}s")

        return response
