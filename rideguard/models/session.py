# rideguard/models/session.py

from datetime import datetime, timedelta, timezone
from typing import Optional, TYPE_CHECKING
import secrets
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from fastapi import Request


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    """256 bits from the OS CSPRNG, hex encoded"""
    return secrets.token_hex(32)


class DeviceInfo(BaseModel):
    browser: str = "Unknown"
    os: str = "Unknown"
    device: str = "Desktop"


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """
    Classify a user-agent string by substring match.

    Best-effort metadata for the session list, never a security control.
    """
    ua = user_agent or ""

    if "Chrome" in ua:
        browser = "Chrome"
    elif "Firefox" in ua:
        browser = "Firefox"
    elif "Safari" in ua:
        browser = "Safari"
    else:
        browser = "Unknown"

    if "Windows" in ua:
        os_name = "Windows"
    elif "Mac" in ua:
        os_name = "macOS"
    elif "Linux" in ua:
        os_name = "Linux"
    elif "Android" in ua:
        os_name = "Android"
    elif "iOS" in ua:
        os_name = "iOS"
    else:
        os_name = "Unknown"

    device = "Mobile" if "Mobile" in ua else "Desktop"

    return DeviceInfo(browser=browser, os=os_name, device=device)


def get_real_ip(request: "Request") -> str:
    """
    Get the real client IP, considering proxy headers.

    X-Forwarded-For can carry a chain; the first hop is the client.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host
    return "unknown"


class RequestContext(BaseModel):
    """Snapshot of the request attributes the security core records"""
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    method: Optional[str] = None
    endpoint: Optional[str] = None

    @classmethod
    def from_request(cls, request: "Request") -> "RequestContext":
        endpoint = request.url.path
        if request.url.query:
            endpoint = f"{endpoint}?{request.url.query}"
        return cls(
            ip_address=get_real_ip(request),
            user_agent=request.headers.get("User-Agent") or "unknown",
            method=request.method,
            endpoint=endpoint,
        )


class Session(BaseModel):
    """
    Server-side record binding one device/browser to an authenticated user.

    Once `is_active` goes False the record is terminal; nothing in the
    core sets it back to True.
    """
    session_id: str = Field(default_factory=generate_session_id)
    user_id: str
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    is_active: bool = True
    remember_me: bool = False
    last_activity: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_idle(self, timeout: timedelta, now: Optional[datetime] = None) -> bool:
        return self.last_activity < (now or utcnow()) - timeout

    def time_to_expiry(self, now: Optional[datetime] = None) -> timedelta:
        return self.expires_at - (now or utcnow())


class SessionGrant(BaseModel):
    """Result of a successful session creation"""
    token: str
    session_id: str
    session: Session


class SessionValidation(BaseModel):
    valid: bool
    session: Optional[Session] = None


class RefreshResult(BaseModel):
    refreshed: bool
    new_token: Optional[str] = None
