from typing import Any, Optional


class UsageGuardException(Exception):
    """Base exception for all Usage Guard domain errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(UsageGuardException):
    """Raised when a runtime dependency is missing or misconfigured."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            message, code="configuration_error", status_code=500, details=details
        )


class NotificationDeliveryError(UsageGuardException):
    """Raised by email transports; callers convert it into a failed send result."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            message, code="notification_delivery_failed", status_code=502, details=details
        )
