from __future__ import annotations


class PolicyTrackerError(Exception):
    """Base error for PolicyTracker."""


class DatabaseError(PolicyTrackerError):
    """Database layer failure."""


class PaymentConfigError(PolicyTrackerError):
    """Missing or invalid payment gateway credentials."""


class PaymentGatewayError(PolicyTrackerError):
    """Payment gateway rejected the request or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnknownPlanError(PolicyTrackerError):
    """Requested plan is not in the server-side price list."""


class CompressionError(PolicyTrackerError):
    """Document could not be decoded for compression."""


class NotificationConfigError(PolicyTrackerError):
    """Email provider configuration missing required fields."""


class NotificationDeliveryError(PolicyTrackerError):
    """Email provider request failure."""
