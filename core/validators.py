"""
Input validation utilities for the Course Registration System.
"""
import re
from datetime import datetime, timezone
from typing import Tuple, Optional

from core.errors import ValidationError

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,50}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
OTP_PATTERN = re.compile(r"^\d{6}$")
COURSE_CODE_PATTERN = re.compile(r"^[A-Za-z0-9-]{2,20}$")
PASSWORD_SPECIAL_CHARS = "@$!%*?&#^()_+-=[]{}|;:,.<>/~"

MAX_SEATS_LIMIT = 500


def validate_username(username: str) -> Tuple[bool, Optional[str]]:
    """Username must be 3-50 characters of letters, numbers and underscores."""
    if not username or not USERNAME_PATTERN.match(username):
        return False, "Username must be 3-50 characters and contain only letters, numbers, and underscores"
    return True, None


def validate_email(email: str) -> Tuple[bool, Optional[str]]:
    if not email or not EMAIL_PATTERN.match(email.strip()):
        return False, "Please provide a valid email address"
    return True, None


def validate_password(password: str) -> Tuple[bool, Optional[str]]:
    """
    Validate password strength.

    Requirements:
    - Minimum 8 characters
    - At least 1 uppercase, 1 lowercase, 1 number and 1 special character
    - Maximum 72 bytes (bcrypt limit)

    Args:
        password: Password to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not password:
        return False, "Password is required"

    if len(password) < 8:
        return False, "Password must be at least 8 characters long"

    if len(password.encode('utf-8')) > 72:
        return False, "Password cannot be longer than 72 bytes. Please use a shorter password."

    if not any(c.isupper() for c in password) or not any(c.islower() for c in password):
        return False, "Password must contain uppercase and lowercase letters"

    if not any(c.isdigit() for c in password):
        return False, "Password must contain at least one number"

    if not any(c in PASSWORD_SPECIAL_CHARS for c in password):
        return False, "Password must contain at least one special character"

    return True, None


def validate_otp(otp: str) -> Tuple[bool, Optional[str]]:
    if not otp or not OTP_PATTERN.match(otp.strip()):
        return False, "OTP must be 6 digits"
    return True, None


def validate_course_code(code: str) -> Tuple[bool, Optional[str]]:
    if not code or not COURSE_CODE_PATTERN.match(code.strip()):
        return False, "Course code must be 2-20 characters of letters, numbers, and hyphens"
    return True, None


def validate_course_name(name: str) -> Tuple[bool, Optional[str]]:
    if not name or not 3 <= len(name.strip()) <= 100:
        return False, "Course name must be between 3 and 100 characters"
    return True, None


def validate_description(description: Optional[str]) -> Tuple[bool, Optional[str]]:
    if description is not None and len(description) > 500:
        return False, "Description cannot exceed 500 characters"
    return True, None


def validate_max_seats(max_seats: int) -> Tuple[bool, Optional[str]]:
    if not isinstance(max_seats, int) or isinstance(max_seats, bool) or not 1 <= max_seats <= MAX_SEATS_LIMIT:
        return False, f"Max seats must be between 1 and {MAX_SEATS_LIMIT}"
    return True, None


def parse_iso8601(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into a naive UTC datetime.

    A trailing ``Z`` is accepted. Offset-aware values are converted to UTC;
    values without an offset are taken to already be UTC.

    Raises:
        ValueError: If the value is not ISO-8601
    """
    if not value or not isinstance(value, str):
        raise ValueError("Empty timestamp")
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def validate_iso8601(value: str) -> Tuple[bool, Optional[str]]:
    try:
        parse_iso8601(value)
    except ValueError:
        return False, "Value must be a valid ISO 8601 date"
    return True, None


def ensure_valid(result: Tuple[bool, Optional[str]], field: Optional[str] = None) -> None:
    """
    Raise ValidationError for a failed (is_valid, error_message) check.

    Usage:
        ensure_valid(validate_email(email), "email")
    """
    is_valid, error_message = result
    if not is_valid:
        raise ValidationError(error_message, field=field)
