# rideguard/models/activity.py

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field, field_validator


class ActivityAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    PROFILE_VIEW = "PROFILE_VIEW"
    VEHICLE_CREATE = "VEHICLE_CREATE"
    VEHICLE_UPDATE = "VEHICLE_UPDATE"
    VEHICLE_DELETE = "VEHICLE_DELETE"
    VEHICLE_VIEW = "VEHICLE_VIEW"
    SERVICE_CREATE = "SERVICE_CREATE"
    SERVICE_UPDATE = "SERVICE_UPDATE"
    SERVICE_DELETE = "SERVICE_DELETE"
    SERVICE_VIEW = "SERVICE_VIEW"
    ADMIN_ACCESS = "ADMIN_ACCESS"
    USER_VIEW = "USER_VIEW"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    SYSTEM_ACCESS = "SYSTEM_ACCESS"
    FILE_UPLOAD = "FILE_UPLOAD"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET_COMPLETE = "PASSWORD_RESET_COMPLETE"
    FAILED_LOGIN = "FAILED_LOGIN"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    # Emitted by the security core itself
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_EVICTED = "SESSION_EVICTED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_REVOKED = "SESSION_REVOKED"
    XSS_ATTEMPT = "XSS_ATTEMPT"
    INJECTION_ATTEMPT = "INJECTION_ATTEMPT"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ActivityRecord(BaseModel):
    """Append-only audit entry; immutable once created"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: Optional[str] = None
    username: str = "Anonymous"
    action: ActivityAction
    description: str
    ip_address: str = "Unknown"
    user_agent: str = "Unknown"
    method: str = "UNKNOWN"
    endpoint: str = "/unknown"
    status_code: int = 200
    response_time_ms: float = 0
    severity: Severity = Severity.LOW
    additional_data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ActivityQuery(BaseModel):
    """Filters for activity lookups; all optional"""
    user_id: Optional[str] = None
    action: Optional[ActivityAction] = None
    severity: Optional[Severity] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    search: Optional[str] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=5000)

    @field_validator("start_date", "end_date")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def matches(self, record: ActivityRecord) -> bool:
        if self.user_id and record.user_id != self.user_id:
            return False
        if self.action and record.action != self.action:
            return False
        if self.severity and record.severity != self.severity:
            return False
        if self.start_date and record.created_at < self.start_date:
            return False
        if self.end_date and record.created_at > self.end_date:
            return False
        if self.search:
            needle = self.search.lower()
            if needle not in record.description.lower() and needle not in record.username.lower():
                return False
        return True


class ActivityPage(BaseModel):
    activities: List[ActivityRecord]
    total: int
    total_pages: int
    current_page: int
