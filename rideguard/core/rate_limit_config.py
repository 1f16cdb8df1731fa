"""
Rate limiting configuration for the RideGuard API
"""

from fastapi import Request
from slowapi.util import get_remote_address

from rideguard.models.session import get_real_ip as _real_ip_from_headers


def get_real_ip(request: Request) -> str:
    """
    Get the real IP address, considering proxy headers.
    Falls back to slowapi's remote address when no proxy header is present.
    """
    ip = _real_ip_from_headers(request)
    if ip == "unknown":
        return get_remote_address(request)
    return ip


# Rate limit configurations per endpoint group
RATE_LIMIT_TIERS = {
    "default": {
        "sessions_read": "60/minute",   # Session listing
        "sessions_write": "20/minute",  # Logout / revoke
        "admin": "30/minute",           # Activity reports
        "export": "5/minute",           # CSV export is expensive
        "global": "100/minute"          # Overall API calls
    },
    "trusted": {  # Internal tooling behind the gateway
        "sessions_read": "150/minute",
        "sessions_write": "50/minute",
        "admin": "100/minute",
        "export": "20/minute",
        "global": "500/minute"
    }
}

RATE_LIMIT_MESSAGES = {
    "default": "Too many requests. Please wait a moment and try again.",
    "export": "Export is limited. Please try again later.",
}


def get_rate_limit_message(endpoint: str) -> str:
    """Get custom error message for rate limited endpoint"""
    return RATE_LIMIT_MESSAGES.get(endpoint, RATE_LIMIT_MESSAGES["default"])
