# rideguard/main.py
"""
RideGuard API - HTTP integration of the security core.

Wires request sanitization, session validation and activity logging
into a FastAPI application and exposes session self-service and
admin activity reporting endpoints.
"""

from fastapi import FastAPI, HTTPException, Depends, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
import logging
import os
import secrets

from rideguard.core.config import (
    settings,
    validate_required_settings,
    get_admin_api_key,
    get_jwt_secret
)
from rideguard.core.exceptions import CredentialError, RideGuardError
from rideguard.core.logging_config import setup_logging
from rideguard.core.rate_limit_config import get_real_ip, get_rate_limit_message, RATE_LIMIT_TIERS
from rideguard.core.security import (
    CredentialService,
    SessionConfig,
    SessionManager,
    SessionSweeper,
    get_session_manager,
    init_session_manager
)
from rideguard.middleware.activity_middleware import ActivityLoggingMiddleware, track_activity
from rideguard.middleware.sanitization_middleware import SanitizationMiddleware, sanitize_path_params
from rideguard.middleware.security_middleware import SecurityMiddleware
from rideguard.models.activity import ActivityAction, ActivityQuery, Severity
from rideguard.models.session import RequestContext, Session
from rideguard.services.activity_logger import get_activity_logger, init_activity_logger
from rideguard.services.activity_reports import (
    activity_stats,
    cleanup_activities,
    export_activities,
    query_activities
)
from rideguard.services.activity_store import (
    ActivityStore,
    InMemoryActivityStore,
    RedisActivityStore
)
from rideguard.services.redis_service import RedisService, create_redis_service
from rideguard.services.sanitization_service import init_sanitization_pipeline
from rideguard.services.session_store import (
    InMemorySessionStore,
    RedisSessionStore,
    SessionStore
)

# Setup logging
logger = setup_logging()


async def build_stores(redis_url: Optional[str]):
    """Redis-backed stores when a URL is configured, in-memory otherwise"""
    if not redis_url:
        logger.warning("⚠️ REDIS_URL not set - using in-memory stores (single process only)")
        return InMemorySessionStore(), InMemoryActivityStore(), None

    redis_service = await create_redis_service(redis_url, key_prefix="rideguard")
    if not redis_service.is_connected():
        logger.error("❌ Redis unreachable - session validation will fail until it recovers")
    return RedisSessionStore(redis_service), RedisActivityStore(redis_service), redis_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan event handler for startup/shutdown"""
    # Startup
    logger.info("=" * 60)
    logger.info("🚀 RideGuard API Starting...")
    logger.info("=" * 60)

    # Validate environment variables (warn but don't fail)
    if not validate_required_settings():
        logger.warning("⚠️ Some environment variables are missing - using temporary secrets")

    session_store: SessionStore
    activity_store: ActivityStore
    redis_service: Optional[RedisService]
    session_store, activity_store, redis_service = await build_stores(settings.REDIS_URL)

    activity_logger = init_activity_logger(activity_store, settings.ACTIVITY_QUEUE_SIZE)
    await activity_logger.start()

    credentials = CredentialService(get_jwt_secret(), settings.JWT_ALGORITHM)
    manager = init_session_manager(
        session_store,
        credentials,
        SessionConfig.from_settings(settings),
        activity_logger
    )
    init_sanitization_pipeline(settings.SANITIZER_MAX_DEPTH, settings.POLLUTION_WHITELIST)

    sweeper = SessionSweeper(manager, timedelta(minutes=settings.SESSION_SWEEP_INTERVAL_MINUTES))
    sweeper.start()

    app.state.session_store = session_store
    app.state.activity_store = activity_store
    app.state.credentials = credentials
    app.state.redis_service = redis_service

    logger.info("📋 Configuration:")
    logger.info(f"  - Stores: {'redis' if redis_service else 'in-memory'}")
    logger.info(f"  - Max concurrent sessions: {settings.MAX_CONCURRENT_SESSIONS}")
    logger.info(f"  - Sanitizer max depth: {settings.SANITIZER_MAX_DEPTH}")
    logger.info("✅ RideGuard API Ready!")

    yield

    # Shutdown
    logger.info("🛑 RideGuard API Shutting down...")
    await sweeper.stop()
    await activity_logger.stop()
    if redis_service:
        await redis_service.shutdown()
    logger.info("👋 Goodbye!")


# Initialize FastAPI app with lifespan
app = FastAPI(
    title="RideGuard API",
    description="Session, sanitization and audit core of the rental backend",
    version="1.0.0",
    lifespan=lifespan,
    dependencies=[Depends(sanitize_path_params)],
    docs_url=None,
    redoc_url=None
)

# Generic error message for production
def get_safe_error_message(error: Exception, context: str = "") -> str:
    """Return a safe error message that doesn't expose internal details"""
    logger.error(f"Error in {context}: {type(error).__name__}: {str(error)}")

    if isinstance(error, HTTPException):
        return error.detail

    error_messages = {
        "StoreError": "Service temporarily unavailable. Please try again later.",
        "RedisServiceError": "Service temporarily unavailable. Please try again later.",
        "TimeoutError": "The request took too long. Please try again.",
    }
    return error_messages.get(type(error).__name__, "An error occurred. Please try again later.")


@app.exception_handler(RideGuardError)
async def rideguard_error_handler(request: Request, exc: RideGuardError):
    return JSONResponse(
        status_code=500,
        content={"detail": get_safe_error_message(exc, request.url.path)}
    )

# =============================================================================
# AUTHENTICATION
# =============================================================================

def not_authenticated() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )

bearer_scheme = HTTPBearer(auto_error=False)


class AuthenticatedSession(BaseModel):
    user_id: str
    session: Session


async def require_session(
    request: Request,
    response: Response,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    manager: SessionManager = Depends(get_session_manager),
) -> AuthenticatedSession:
    """
    Authenticate the request by its Bearer credential.

    The signature is checked first; the session store decides whether the
    session is still usable. Every failure is the same 401.
    """
    if credentials is None:
        raise not_authenticated()

    try:
        claims = request.app.state.credentials.verify(credentials.credentials)
    except CredentialError as e:
        logger.info(f"❌ Credential rejected ({e.error_type})")
        raise not_authenticated()

    validation = await manager.validate_session(claims.session_id, claims.user_id)
    if not validation.valid or validation.session is None:
        raise not_authenticated()

    refresh = await manager.refresh_if_needed(validation.session)
    if refresh.refreshed:
        response.headers["X-Refreshed-Token"] = refresh.new_token

    request.state.user_id = claims.user_id
    request.state.session_id = claims.session_id
    return AuthenticatedSession(user_id=claims.user_id, session=validation.session)


ADMIN_KEY_NAME = "X-Admin-Key"
admin_key_header = APIKeyHeader(name=ADMIN_KEY_NAME, auto_error=False)


async def verify_admin_key(request: Request, api_key: Optional[str] = Depends(admin_key_header)):
    """Verify the admin key for activity reporting endpoints"""
    if api_key is None:
        logger.warning("❌ Admin request without key")
        raise HTTPException(
            status_code=401,
            detail=f"Missing admin key. Include '{ADMIN_KEY_NAME}' header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    if not secrets.compare_digest(api_key, get_admin_api_key()):
        logger.warning("❌ Invalid admin key attempt detected")
        get_activity_logger().record_security_event(
            ActivityAction.ADMIN_ACCESS,
            "Invalid admin key",
            RequestContext.from_request(request),
            severity=Severity.HIGH,
        )
        raise HTTPException(
            status_code=401,
            detail="Invalid admin key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    request.state.user_id = "admin"
    request.state.username = "admin"
    return api_key

# =============================================================================
# RATE LIMITING
# =============================================================================

limiter = Limiter(key_func=get_real_ip)


def custom_rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Custom rate limit response with helpful message"""
    response = PlainTextResponse(
        content=get_rate_limit_message("export" if request.url.path.endswith("/export") else "default"),
        status_code=429,
    )
    response.headers["Retry-After"] = "60"
    response.headers["X-RateLimit-Limit"] = str(getattr(exc, "limit", "N/A"))
    return response

app.add_exception_handler(RateLimitExceeded, custom_rate_limit_handler)
app.state.limiter = limiter

RATE_LIMITS = RATE_LIMIT_TIERS[os.getenv("RATE_LIMIT_TIER", "default")]

# =============================================================================
# MIDDLEWARE (last added runs first)
# =============================================================================

app.middleware("http")(ActivityLoggingMiddleware())
app.add_middleware(SanitizationMiddleware)
app.middleware("http")(SecurityMiddleware())

# =============================================================================
# ENDPOINTS
# =============================================================================


@app.get("/", status_code=200)
def read_root():
    """Health check endpoint"""
    return {"status": "ok", "version": "1.0.0", "service": "rideguard"}


@app.get("/health", status_code=200)
async def health(request: Request):
    """Health check with store and logger status"""
    redis_service: Optional[RedisService] = getattr(request.app.state, "redis_service", None)
    stores: Dict[str, Any] = {"backend": "redis" if redis_service else "in-memory"}
    if redis_service:
        stores["redis"] = await redis_service.health_check()

    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stores": stores,
        "sessions": get_session_manager().get_metrics(),
        "activity_logger": get_activity_logger().get_metrics(),
    }


def _session_view(session: Session, current_id: str) -> Dict[str, Any]:
    data = session.model_dump(mode="json", exclude={"user_id"})
    data["is_current"] = session.session_id == current_id
    return data


@app.get("/sessions")
@limiter.limit(RATE_LIMITS["sessions_read"])
async def list_sessions(
    request: Request,
    auth: AuthenticatedSession = Depends(require_session),
    manager: SessionManager = Depends(get_session_manager),
):
    """Active sessions of the caller, most recent activity first"""
    sessions = await manager.list_active_sessions(auth.user_id)
    return {
        "sessions": [_session_view(s, auth.session.session_id) for s in sessions],
        "total": len(sessions),
    }


@app.delete(
    "/sessions/current",
    dependencies=[Depends(track_activity(ActivityAction.LOGOUT, "User logged out"))]
)
@limiter.limit(RATE_LIMITS["sessions_write"])
async def logout(
    request: Request,
    auth: AuthenticatedSession = Depends(require_session),
    manager: SessionManager = Depends(get_session_manager),
):
    await manager.invalidate_session(auth.session.session_id, auth.user_id)
    return {"message": "Logged out"}


@app.delete(
    "/sessions",
    dependencies=[Depends(track_activity(
        ActivityAction.LOGOUT, "User logged out of all sessions", Severity.MEDIUM
    ))]
)
@limiter.limit(RATE_LIMITS["sessions_write"])
async def logout_everywhere(
    request: Request,
    auth: AuthenticatedSession = Depends(require_session),
    manager: SessionManager = Depends(get_session_manager),
):
    if not await manager.invalidate_all_sessions(auth.user_id):
        raise HTTPException(status_code=503, detail="Service temporarily unavailable")
    return {"message": "Logged out of all sessions"}


@app.delete("/sessions/{session_id}")
@limiter.limit(RATE_LIMITS["sessions_write"])
async def revoke_session(
    request: Request,
    session_id: str,
    auth: AuthenticatedSession = Depends(require_session),
    manager: SessionManager = Depends(get_session_manager),
):
    """End one of the caller's own sessions"""
    if not await manager.invalidate_session(session_id, auth.user_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": "Session ended"}


class CleanupRequest(BaseModel):
    days: int = Field(default=settings.ACTIVITY_RETENTION_DAYS, ge=0)


@app.get("/activities", dependencies=[Depends(verify_admin_key)])
@limiter.limit(RATE_LIMITS["admin"])
async def list_activities(request: Request, filters: ActivityQuery = Depends()):
    page = await query_activities(request.app.state.activity_store, filters)
    return {
        **page.model_dump(mode="json"),
        "message": (
            "No activities found." if page.total == 0
            else f"Found {page.total} activities"
        ),
    }


@app.get("/activities/stats", dependencies=[Depends(verify_admin_key)])
@limiter.limit(RATE_LIMITS["admin"])
async def get_activity_stats(request: Request, period: str = "7d"):
    try:
        return await activity_stats(request.app.state.activity_store, period)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/activities/export", dependencies=[Depends(verify_admin_key)])
@limiter.limit(RATE_LIMITS["export"])
async def export_activity_csv(request: Request, filters: ActivityQuery = Depends()):
    content = await export_activities(request.app.state.activity_store, filters)
    filename = f"activities-{datetime.now(timezone.utc).date().isoformat()}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.post(
    "/activities/cleanup",
    dependencies=[
        Depends(verify_admin_key),
        Depends(track_activity(ActivityAction.ADMIN_ACCESS, "Activity retention cleanup", Severity.MEDIUM)),
    ]
)
@limiter.limit(RATE_LIMITS["admin"])
async def cleanup_activity_records(request: Request, body: Optional[CleanupRequest] = None):
    body = body or CleanupRequest()
    deleted = await cleanup_activities(request.app.state.activity_store, body.days)
    return {
        "message": f"Deleted {deleted} activities older than {body.days} days",
        "deleted_count": deleted,
    }


# Main entry point
if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"🚀 Starting RideGuard server on port {port}...")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
