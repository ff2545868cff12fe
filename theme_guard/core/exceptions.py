# theme_guard/core/exceptions.py
"""
Core exceptions for the theme access-control layer.

Only ConfigurationError is meant to abort a request: it signals a programming
error. Store failures are recovered by the services that hit them, and
protected-key or token mismatches surface as boolean results.
"""

from typing import Optional, Dict, Any


class GuardBaseException(Exception):
    """Base exception for all access-control errors"""

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


class GuardConfigurationError(GuardBaseException):
    """Invalid configuration passed by a caller (e.g. a non-positive rate limit)"""

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize configuration error.

        Args:
            message: Error description
            component: Component with configuration issue
            details: Additional configuration context
        """
        super().__init__(message, details)
        self.component = component

        if component:
            self.details['component'] = component


class GuardServiceError(GuardBaseException):
    """Errors in external service interactions"""

    def __init__(
        self,
        message: str,
        service_name: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize service error.

        Args:
            message: Error description
            service_name: Name of the failing service
            operation: Operation that failed
            details: Additional service context
        """
        super().__init__(message, details)
        self.service_name = service_name
        self.operation = operation

        if service_name:
            self.details['service'] = service_name
        if operation:
            self.details['operation'] = operation


class StoreUnavailableError(GuardServiceError):
    """The shared TTL key-value store could not be reached"""

    def __init__(
        self,
        message: str,
        store: Optional[str] = None,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, service_name=store or "KVStore", operation=operation, details=details)
        self.key = key

        # Keys carry hashed identifiers only, but keep them short in logs
        if key:
            self.details['key'] = key[:64]


class GuardSecurityError(GuardBaseException):
    """Failed security check (token mismatch, missing session)"""

    # The only text ever shown to the visitor
    public_message = "Security check failed. Please reload the page and try again."

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize security error.

        Args:
            message: Error description (internal only)
            error_type: Type of security error (token, session)
            details: Additional security context
        """
        super().__init__(message, details)
        self.error_type = error_type

        if error_type:
            self.details['error_type'] = error_type


class RateLimitExceededError(GuardBaseException):
    """A caller exceeded the limit of an action and is currently blocked"""

    def __init__(
        self,
        message: str,
        action: str,
        retry_after: int,
        limit: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.action = action
        self.retry_after = max(0, int(retry_after))
        self.limit = limit

        self.details['action'] = action
        self.details['retry_after'] = self.retry_after


# Convenience functions for creating common errors

def config_error(message: str, component: str) -> GuardConfigurationError:
    """Create a configuration error with component context."""
    return GuardConfigurationError(message, component=component)


def store_error(message: str, key: str = None, operation: str = None, store: str = None) -> StoreUnavailableError:
    """Create a store error with key context."""
    return StoreUnavailableError(message, store=store, key=key, operation=operation)


def security_error(message: str, error_type: str) -> GuardSecurityError:
    """Create a security error with type context."""
    return GuardSecurityError(message, error_type=error_type)


# Shorter names
ConfigurationError = GuardConfigurationError
ServiceError = GuardServiceError
SecurityError = GuardSecurityError
