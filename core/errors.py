"""
Exception hierarchy for the course registration core.

Every error raised by a service carries the HTTP status the API layer should
answer with and a message that is safe to show to the caller. Credential
failures deliberately share one generic message.
"""
import enum
from typing import Optional


class OTPFailure(str, enum.Enum):
    """Reasons a one-time passcode was rejected."""
    NO_CHALLENGE = "no_challenge"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"


class SessionFailure(str, enum.Enum):
    """Reasons a session handle was rejected."""
    NOT_FOUND = "not_found"
    INVALIDATED = "invalidated"
    EXPIRED = "expired"
    TOKEN_MISMATCH = "token_mismatch"


class TokenFailure(str, enum.Enum):
    """Reasons a bearer credential was rejected."""
    EXPIRED = "expired"
    INVALID = "invalid"


OTP_MESSAGES = {
    OTPFailure.NO_CHALLENGE: "No valid OTP found",
    OTPFailure.EXPIRED: "OTP has expired",
    OTPFailure.MISMATCH: "Invalid OTP",
    OTPFailure.ATTEMPTS_EXCEEDED: "Too many incorrect OTP attempts. Request a new OTP.",
}

SESSION_MESSAGES = {
    SessionFailure.NOT_FOUND: "Session not found",
    SessionFailure.INVALIDATED: "Session has been invalidated",
    SessionFailure.EXPIRED: "Session has expired",
    SessionFailure.TOKEN_MISMATCH: "Invalid session token",
}

TOKEN_MESSAGES = {
    TokenFailure.EXPIRED: "Token has expired",
    TokenFailure.INVALID: "Invalid token",
}


class CourseRegistrationError(Exception):
    """Base class for all errors raised by the core."""
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, reason: Optional[str] = None):
        self.message = message or self.default_message
        self.reason = reason
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {
            "success": False,
            "message": self.message,
            "error": type(self).__name__,
        }
        if self.reason is not None:
            body["reason"] = self.reason
        return body


class ValidationError(CourseRegistrationError):
    """Caller input is malformed."""
    status_code = 400
    default_message = "Validation failed"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.field:
            body["field"] = self.field
        return body


class DuplicateError(CourseRegistrationError):
    """A uniqueness constraint would be violated."""
    status_code = 409
    default_message = "Resource already exists"


class InvalidCredentials(CourseRegistrationError):
    status_code = 401
    default_message = "Invalid credentials"

    def __init__(self):
        # Same message whether the account is missing or the password is wrong
        super().__init__(self.default_message)


class AccountDeactivated(CourseRegistrationError):
    status_code = 403
    default_message = "Account is deactivated"


class OTPError(CourseRegistrationError):
    status_code = 400

    def __init__(self, failure: OTPFailure):
        self.failure = failure
        super().__init__(OTP_MESSAGES[failure], reason=failure.value)


class SessionError(CourseRegistrationError):
    status_code = 401

    def __init__(self, failure: SessionFailure):
        self.failure = failure
        super().__init__(SESSION_MESSAGES[failure], reason=failure.value)


class TokenError(CourseRegistrationError):
    status_code = 401

    def __init__(self, failure: TokenFailure, message: Optional[str] = None):
        self.failure = failure
        super().__init__(message or TOKEN_MESSAGES[failure], reason=failure.value)


class MFARequired(CourseRegistrationError):
    status_code = 401
    default_message = "MFA verification required"


class AuthorizationError(CourseRegistrationError):
    status_code = 403
    default_message = "Access denied. Insufficient permissions."


class NotFound(CourseRegistrationError):
    status_code = 404
    default_message = "Resource not found"


class CourseNotFound(NotFound):
    default_message = "Course not found"


class RegistrationNotFound(NotFound):
    default_message = "Registration not found"


class UserNotFound(NotFound):
    default_message = "User not found"


class CourseFull(CourseRegistrationError):
    status_code = 409
    default_message = "Course is full"


class AlreadyRegistered(CourseRegistrationError):
    status_code = 409
    default_message = "Already registered for this course"


class PolicyClosed(CourseRegistrationError):
    """Registration window closed or drop deadline passed."""
    status_code = 400
    default_message = "Action not allowed by current policy"


class IntegrityError(CourseRegistrationError):
    """Stored ciphertext or hash failed verification."""
    status_code = 500
    default_message = "Integrity verification failed"
