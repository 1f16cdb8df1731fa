"""
Security module for RideGuard.

Centralizes session security:
- Session lifecycle (create, validate, refresh, invalidate, sweep)
- Signed session credentials

Kept as a layer on top of the stores so the business routes
only ever see "authenticated" or "not authenticated".
"""

from .credentials import CredentialClaims, CredentialService
from .session_manager import (
    SessionConfig,
    SessionManager,
    SessionSweeper,
    get_session_manager,
    init_session_manager
)

__all__ = [
    'CredentialClaims',
    'CredentialService',
    'SessionConfig',
    'SessionManager',
    'SessionSweeper',
    'get_session_manager',
    'init_session_manager'
]
