"""
Database models for the course registration system.
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text,
    ForeignKey, JSON, Index, TypeDecorator, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base, relationship
import enum

Base = declarative_base()


# ============================================================================
# Custom Type Decorator for Enum Values
# ============================================================================

class EnumValue(TypeDecorator):
    """Type decorator to ensure enum values (not names) are stored."""
    impl = String
    cache_ok = True

    def __init__(self, enum_class, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.enum_class = enum_class

    def process_bind_param(self, value, dialect):
        """Convert enum to its value when writing to database."""
        if value is None:
            return None
        if isinstance(value, enum.Enum):
            return value.value
        return value

    def process_result_value(self, value, dialect):
        """Convert database value back to enum when reading."""
        if value is None:
            return None
        if isinstance(value, str):
            try:
                return self.enum_class(value)
            except ValueError:
                return value
        return value


# ============================================================================
# Enums - Must be defined before models that use them
# ============================================================================

class UserRole(str, enum.Enum):
    """User roles for authorization."""
    STUDENT = "student"
    FACULTY = "faculty"
    ADMIN = "admin"


class RegistrationStatus(str, enum.Enum):
    REGISTERED = "registered"
    DROPPED = "dropped"


class PolicyKey(str, enum.Enum):
    """The three system-wide policy windows."""
    REGISTRATION_START = "registration_start"
    REGISTRATION_END = "registration_end"
    DROP_DEADLINE = "drop_deadline"


class AuditAction(str, enum.Enum):
    """Audited action names."""
    USER_REGISTER = "USER_REGISTER"
    LOGIN_ATTEMPT = "LOGIN_ATTEMPT"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    OTP_FAILED = "OTP_FAILED"
    LOGOUT = "LOGOUT"
    COURSE_REGISTER = "COURSE_REGISTER"
    COURSE_DROP = "COURSE_DROP"
    COURSE_CREATE = "COURSE_CREATE"
    COURSE_UPDATE = "COURSE_UPDATE"
    COURSE_DELETE = "COURSE_DELETE"
    USER_ACTIVATE = "USER_ACTIVATE"
    USER_DEACTIVATE = "USER_DEACTIVATE"
    POLICY_UPDATE = "POLICY_UPDATE"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"


# ============================================================================
# Models
# ============================================================================

class User(Base):
    """User model for authentication and authorization."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)  # Stored lowercase
    password_hash = Column(String(255), nullable=False)
    password_salt = Column(String(64), nullable=False)
    role = Column(EnumValue(UserRole, 20), default=UserRole.STUDENT, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Single OTP challenge slot; a new login overwrites it
    otp_hash = Column(String(64), nullable=True)
    otp_expiry = Column(DateTime, nullable=True)
    otp_used = Column(Boolean, default=False, nullable=False)
    otp_attempts = Column(Integer, default=0, nullable=False)  # Wrong codes against the live challenge

    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    sessions = relationship("Session", back_populates="user", cascade="all, delete-orphan")
    registrations = relationship("Registration", back_populates="student", cascade="all, delete-orphan")
    taught_courses = relationship("Course", back_populates="faculty")

    __table_args__ = (
        Index('idx_user_role', 'role'),
    )


class Session(Base):
    """Login session; only the SHA-256 of the bearer token is stored."""
    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash = Column(String(64), nullable=False)
    is_temp = Column(Boolean, default=False, nullable=False)  # Pre-MFA session
    is_valid = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="sessions")

    __table_args__ = (
        Index('idx_session_user', 'user_id'),
        Index('idx_session_expires', 'expires_at'),
    )


class Course(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    code = Column(String(20), unique=True, nullable=False)  # Stored uppercase
    description = Column(Text, nullable=True)
    faculty_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    max_seats = Column(Integer, nullable=False)
    current_enrollment = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    faculty = relationship("User", back_populates="taught_courses")
    registrations = relationship("Registration", back_populates="course")

    __table_args__ = (
        CheckConstraint('max_seats >= 1 AND max_seats <= 500', name='ck_course_max_seats'),
        CheckConstraint(
            'current_enrollment >= 0 AND current_enrollment <= max_seats',
            name='ck_course_enrollment'
        ),
        Index('idx_course_faculty', 'faculty_id'),
    )

    @property
    def available_seats(self) -> int:
        return self.max_seats - self.current_enrollment


class Registration(Base):
    """
    One row per (student, course) pair, whatever its status.
    Dropping and re-registering updates this row.
    """
    __tablename__ = "registrations"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    course_id = Column(Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False)
    status = Column(EnumValue(RegistrationStatus, 20), default=RegistrationStatus.REGISTERED, nullable=False)
    encrypted_data = Column(Text, nullable=False)  # Fernet token of the action snapshot
    integrity_hash = Column(String(64), nullable=False)
    registered_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    dropped_at = Column(DateTime, nullable=True)

    student = relationship("User", back_populates="registrations")
    course = relationship("Course", back_populates="registrations")

    __table_args__ = (
        UniqueConstraint('student_id', 'course_id', name='uq_registration_student_course'),
        Index('idx_registration_course_status', 'course_id', 'status'),
    )


class Policy(Base):
    """System-wide policy setting, one row per key."""
    __tablename__ = "policies"

    id = Column(Integer, primary_key=True, index=True)
    setting_key = Column(EnumValue(PolicyKey, 50), unique=True, nullable=False)
    setting_value = Column(String(64), nullable=False)  # ISO-8601 timestamp
    description = Column(String(255), nullable=True)
    updated_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuditLog(Base):
    """Append-only audit log; each entry carries its own keyed integrity hash."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action = Column(String(50), nullable=False)
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 compatible
    details = Column(JSON, nullable=True)
    integrity_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_audit_user', 'user_id'),
        Index('idx_audit_action', 'action'),
        Index('idx_audit_created', 'created_at'),
    )
