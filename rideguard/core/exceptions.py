# rideguard/core/exceptions.py
"""
RideGuard core exceptions - standardized error handling for the security core.

The taxonomy follows how each failure is treated by the core:
- StoreError: backing store unreachable or timed out
- ValidationFailure: a session is not usable (never explained to the caller)
- SanitizationFault: unexpected input shape during sanitization (fail-open)
- LoggingFault: activity persistence failed (swallowed, logged locally)
"""

from typing import Optional, Dict, Any


class RideGuardError(Exception):
    """Base exception for all RideGuard errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize base exception.

        Args:
            message: Human-readable error message
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class StoreError(RideGuardError):
    """Errors talking to a backing store (session or activity)"""

    def __init__(
        self,
        message: str,
        store_name: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize store error.

        Args:
            message: Error description
            store_name: Name of the failing store
            operation: Operation that failed
            details: Additional store context
        """
        super().__init__(message, details)
        self.store_name = store_name
        self.operation = operation

        if store_name:
            self.details['store'] = store_name
        if operation:
            self.details['operation'] = operation


class RedisServiceError(StoreError):
    """Specific errors for Redis service interactions"""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, store_name="Redis", operation=operation, details=details)
        self.key = key

        if key:
            self.details['key'] = key


class SessionCreationError(RideGuardError):
    """Session could not be created; fatal for the request"""

    def __init__(
        self,
        message: str = "Session creation failed",
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.user_id = user_id

        if user_id:
            self.details['user_id'] = user_id


class ValidationFailure(RideGuardError):
    """A session or request failed validation"""

    def __init__(
        self,
        message: str = "Not authenticated",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)


class CredentialError(ValidationFailure):
    """Signed credential is malformed, tampered with or expired"""

    def __init__(
        self,
        message: str = "Invalid credential",
        error_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.error_type = error_type

        if error_type:
            self.details['error_type'] = error_type


class SanitizationFault(RideGuardError):
    """Unexpected input shape or internal error while sanitizing"""

    def __init__(
        self,
        message: str,
        location: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.location = location

        if location:
            self.details['location'] = location


class SanitizationDepthError(SanitizationFault, ValidationFailure):
    """Input nesting exceeds the configured depth limit"""

    def __init__(
        self,
        max_depth: int,
        location: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        SanitizationFault.__init__(
            self,
            f"Input nested deeper than {max_depth} levels",
            location=location,
            details=details
        )
        self.max_depth = max_depth
        self.details['max_depth'] = max_depth


class LoggingFault(RideGuardError):
    """Activity record could not be persisted"""

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.action = action

        if action:
            self.details['action'] = action


class ConfigurationError(RideGuardError):
    """Errors in system configuration and initialization"""

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.component = component

        if component:
            self.details['component'] = component


# Convenience functions for creating common errors

def store_error(message: str, store: str, operation: str = None) -> StoreError:
    """Create a store error with store context."""
    return StoreError(message, store_name=store, operation=operation)


def config_error(message: str, component: str) -> ConfigurationError:
    """Create a configuration error with component context."""
    return ConfigurationError(message, component=component)


def logging_fault(message: str, action: str = None) -> LoggingFault:
    """Create a logging fault with action context."""
    return LoggingFault(message, action=action)
