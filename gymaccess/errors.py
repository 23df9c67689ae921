"""
Structured error taxonomy for entitlement and access control.

Every failure that crosses a service boundary is one of these. Each error is
a tagged value {kind, message, cause}: routes render it with to_dict() and
never branch on processor- or driver-specific exception shapes.
"""

import uuid
from enum import Enum
from typing import Optional

from fastapi import status


class ErrorKind(str, Enum):
    """Machine-readable error kinds."""
    AUTHENTICATION = "authentication_error"
    NO_ACTIVE_MEMBERSHIP = "no_active_membership"
    PROCESSOR_UNAVAILABLE = "processor_unavailable"
    LOCATION_INVALID = "location_invalid"
    LOCATION_UNSUPPORTED = "location_unsupported"
    QR_CODE_EXPIRED = "qr_code_expired"
    QR_CODE_MISMATCH = "qr_code_mismatch"
    QR_CODE_INVALID = "qr_code_invalid"
    DUPLICATE_SESSION = "duplicate_session"
    NO_OPEN_SESSION = "no_open_session"
    PERSISTENCE = "persistence_error"
    PLAN_NOT_FOUND = "plan_not_found"
    MEMBERSHIP_CONFLICT = "membership_conflict"
    RATE_LIMITED = "rate_limited"


class GymAccessError(Exception):
    """Base exception for all domain errors."""

    kind: ErrorKind = ErrorKind.PERSISTENCE
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Request failed"

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        self.message = message or self.default_message
        self.cause = cause
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.kind.value,
            "message": self.message,
        }


class AuthenticationError(GymAccessError):
    """Caller identity could not be established. Rejected outright."""
    kind = ErrorKind.AUTHENTICATION
    http_status = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class NoActiveMembershipError(GymAccessError):
    """The user holds no access-bearing membership."""
    kind = ErrorKind.NO_ACTIVE_MEMBERSHIP
    http_status = status.HTTP_404_NOT_FOUND
    default_message = "No active membership found"


class ProcessorUnavailableError(GymAccessError):
    """
    The payment processor could not complete a request.

    retryable is True for transient failures (timeouts, rate limits, 5xx)
    where the caller may try again later.
    """
    kind = ErrorKind.PROCESSOR_UNAVAILABLE
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Payment provider is temporarily unavailable. Please try again shortly."

    def __init__(
        self,
        message: Optional[str] = None,
        cause: Optional[BaseException] = None,
        retryable: bool = True,
        operation: Optional[str] = None,
    ):
        super().__init__(message, cause)
        self.retryable = retryable
        self.operation = operation

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["retryable"] = self.retryable
        return payload


class LocationInvalidError(GymAccessError):
    """The claimed location lies outside the facility geofence."""
    kind = ErrorKind.LOCATION_INVALID
    http_status = status.HTTP_403_FORBIDDEN
    default_message = "You must be at the gym to do this."

    def __init__(
        self,
        message: Optional[str] = None,
        cause: Optional[BaseException] = None,
        distance_meters: Optional[float] = None,
        max_distance_meters: Optional[float] = None,
    ):
        super().__init__(message, cause)
        self.distance_meters = distance_meters
        self.max_distance_meters = max_distance_meters

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["remediation"] = "Move closer to the facility entrance and try again."
        if self.distance_meters is not None:
            payload["distance_meters"] = round(self.distance_meters, 1)
        if self.max_distance_meters is not None:
            payload["max_distance_meters"] = self.max_distance_meters
        return payload


class LocationUnsupportedError(GymAccessError):
    """No usable location was supplied with the request."""
    kind = ErrorKind.LOCATION_UNSUPPORTED
    http_status = status.HTTP_400_BAD_REQUEST
    default_message = "A device location is required."

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["remediation"] = "Enable location services for this app and try again."
        return payload


class QRCodeExpiredError(GymAccessError):
    kind = ErrorKind.QR_CODE_EXPIRED
    http_status = status.HTTP_410_GONE
    default_message = "QR code has expired. Please generate a new one."


class QRCodeMismatchError(GymAccessError):
    """The QR action does not match the member's current entry/exit state."""
    kind = ErrorKind.QR_CODE_MISMATCH
    http_status = status.HTTP_409_CONFLICT
    default_message = "QR code is no longer valid for this action. Please generate a new one."


class QRCodeInvalidError(GymAccessError):
    kind = ErrorKind.QR_CODE_INVALID
    http_status = status.HTTP_400_BAD_REQUEST
    default_message = "QR code could not be verified."


class DuplicateSessionError(GymAccessError):
    kind = ErrorKind.DUPLICATE_SESSION
    http_status = status.HTTP_409_CONFLICT
    default_message = "You are already checked in."


class NoOpenSessionError(GymAccessError):
    kind = ErrorKind.NO_OPEN_SESSION
    http_status = status.HTTP_409_CONFLICT
    default_message = "You are not checked in."


class PersistenceError(GymAccessError):
    """
    The store failed. Callers get a generic message and a correlation id;
    full detail goes to the logs under the same id.
    """
    kind = ErrorKind.PERSISTENCE
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "An internal error occurred. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        cause: Optional[BaseException] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message, cause)
        self.correlation_id = correlation_id or str(uuid.uuid4())

    def to_dict(self) -> dict:
        return {
            "error": self.kind.value,
            "message": self.default_message,
            "correlation_id": self.correlation_id,
        }


class PlanNotFoundError(GymAccessError):
    kind = ErrorKind.PLAN_NOT_FOUND
    http_status = status.HTTP_404_NOT_FOUND
    default_message = "Membership plan not found"


class MembershipConflictError(GymAccessError):
    """The user already holds an active membership."""
    kind = ErrorKind.MEMBERSHIP_CONFLICT
    http_status = status.HTTP_409_CONFLICT
    default_message = "This user already has an active membership."


class RateLimitExceededError(GymAccessError):
    kind = ErrorKind.RATE_LIMITED
    http_status = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        cause: Optional[BaseException] = None,
        retry_after_seconds: int = 0,
    ):
        super().__init__(message, cause)
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["retry_after_seconds"] = self.retry_after_seconds
        return payload
