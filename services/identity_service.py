"""
User records, credential verification and OTP challenge state.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Dict, Any, List, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError as SQLAlchemyIntegrityError
from sqlalchemy.orm import Session

from database.models import User, UserRole
from auth.security import CryptoCore, hash_otp, verify_otp
from core.errors import (
    DuplicateError, InvalidCredentials, AccountDeactivated, UserNotFound,
    ValidationError, OTPFailure, OTP_MESSAGES,
)
from core.logger import logger
from core.utils import utcnow, format_timestamp
from core import validators
import config


@dataclass(frozen=True)
class OTPVerification:
    valid: bool
    failure: Optional[OTPFailure] = None

    @property
    def message(self) -> str:
        return "OTP verified" if self.valid else OTP_MESSAGES[self.failure]


def public_user(user: User) -> Dict[str, Any]:
    """User view safe to return to clients: no password, salt or OTP state."""
    return {
        "user_id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role.value if isinstance(user.role, UserRole) else user.role,
        "is_active": user.is_active,
        "created_at": format_timestamp(user.created_at) if user.created_at else None,
    }


class IdentityStore:
    """User accounts and their single OTP challenge slot."""

    def __init__(self, crypto: CryptoCore, otp_expiry_minutes: int = None, max_otp_attempts: int = None):
        self.crypto = crypto
        self.otp_expiry_minutes = otp_expiry_minutes or config.OTP_EXPIRY_MINUTES
        self.max_otp_attempts = max_otp_attempts or config.MAX_OTP_ATTEMPTS
        self._dummy_hash = None

    def create_user(
        self,
        db: Session,
        username: str,
        email: str,
        password: str,
        role: Union[UserRole, str] = UserRole.STUDENT,
    ) -> User:
        """
        Create a new user with a salted password hash.

        The user is flushed, not committed, so the caller can add its audit
        entry to the same transaction.

        Raises:
            ValidationError: Malformed username, email, password or role
            DuplicateError: Username or email already taken
        """
        username = (username or "").strip()
        email = (email or "").strip().lower()
        validators.ensure_valid(validators.validate_username(username), "username")
        validators.ensure_valid(validators.validate_email(email), "email")
        validators.ensure_valid(validators.validate_password(password), "password")
        try:
            role = UserRole(role)
        except ValueError:
            raise ValidationError("Invalid role", field="role")

        existing = db.query(User).filter(
            (User.username == username) | (func.lower(User.email) == email)
        ).first()
        if existing:
            if existing.username == username:
                raise DuplicateError("Username already exists")
            raise DuplicateError("Email already registered")

        salt = self.crypto.generate_salt()
        user = User(
            username=username,
            email=email,
            password_hash=self.crypto.hash_password(password, salt),
            password_salt=salt,
            role=role,
            is_active=True,
        )
        db.add(user)
        try:
            db.flush()
        except SQLAlchemyIntegrityError:
            # Lost a race with a concurrent signup for the same username/email
            db.rollback()
            raise DuplicateError("Username or email already exists")
        logger.info(f"Created user: {username} (role: {role.value})")
        return user

    def get_user(self, db: Session, user_id: int) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if user is None:
            raise UserNotFound()
        return user

    def find_by_email(self, db: Session, email: str) -> Optional[User]:
        if not email:
            return None
        return db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()

    def verify_credentials(self, db: Session, email: str, password: str) -> User:
        """
        Check an email/password pair.

        Raises:
            InvalidCredentials: Unknown email or wrong password (same message for both)
            AccountDeactivated: Correct password on a deactivated account
        """
        user = self.find_by_email(db, email)
        if user is None:
            # Burn a bcrypt check so absent accounts are not distinguishable by latency
            if self._dummy_hash is None:
                self._dummy_hash = self.crypto.hash_password("unused-password", self.crypto.generate_salt())
            self.crypto.verify_password(password or "", self._dummy_hash)
            raise InvalidCredentials()
        if not self.crypto.verify_password(password, user.password_hash):
            raise InvalidCredentials()
        if not user.is_active:
            raise AccountDeactivated("Account is deactivated. Contact administrator.")
        return user

    def issue_otp_challenge(self, db: Session, user: User, otp: str) -> None:
        """
        Store a fresh OTP challenge, replacing any previous one.

        Args:
            db: Database session
            user: Challenged user
            otp: Plain OTP; only its hash is stored
        """
        user.otp_hash = hash_otp(otp)
        user.otp_expiry = utcnow() + timedelta(minutes=self.otp_expiry_minutes)
        user.otp_used = False
        user.otp_attempts = 0
        db.flush()
        logger.info(f"OTP challenge issued for user {user.id}")

    @staticmethod
    def has_live_challenge(user: User) -> bool:
        """True while an issued OTP has not been redeemed (expired or not)."""
        return bool(user.otp_hash) and not user.otp_used

    def verify_otp_challenge(self, db: Session, user: User, candidate: str) -> OTPVerification:
        """
        Redeem the user's OTP challenge.

        A correct OTP marks the challenge used, so a replay fails with
        NO_CHALLENGE. Each wrong code is counted, and the challenge is burned
        (ATTEMPTS_EXCEEDED) once ``max_otp_attempts`` is reached.
        """
        if not self.has_live_challenge(user):
            return OTPVerification(False, OTPFailure.NO_CHALLENGE)
        if user.otp_expiry is None or utcnow() > user.otp_expiry:
            return OTPVerification(False, OTPFailure.EXPIRED)
        if not verify_otp((candidate or "").strip(), user.otp_hash):
            return self._record_mismatch(db, user)

        # Guarded update: at most one redemption of a challenge matches
        redeemed = db.query(User).filter(
            User.id == user.id,
            User.otp_hash == user.otp_hash,
            User.otp_used.is_(False),
        ).update({User.otp_used: True}, synchronize_session=False)
        db.expire(user, ["otp_used"])
        if redeemed != 1:
            logger.warning(f"OTP for user {user.id} was redeemed concurrently")
            return OTPVerification(False, OTPFailure.NO_CHALLENGE)
        return OTPVerification(True)

    def _record_mismatch(self, db: Session, user: User) -> OTPVerification:
        """Count a wrong code; the challenge is burned once the limit is reached."""
        db.query(User).filter(User.id == user.id).update(
            {User.otp_attempts: User.otp_attempts + 1}, synchronize_session=False
        )
        burned = db.query(User).filter(
            User.id == user.id,
            User.otp_used.is_(False),
            User.otp_attempts >= self.max_otp_attempts,
        ).update({User.otp_used: True}, synchronize_session=False)
        db.expire(user, ["otp_attempts", "otp_used"])
        if burned:
            logger.warning(f"OTP challenge for user {user.id} burned after {self.max_otp_attempts} wrong attempts")
            return OTPVerification(False, OTPFailure.ATTEMPTS_EXCEEDED)
        return OTPVerification(False, OTPFailure.MISMATCH)

    def list_users(self, db: Session, role: Optional[str] = None) -> List[User]:
        query = db.query(User)
        if role:
            try:
                query = query.filter(User.role == UserRole(role))
            except ValueError:
                raise ValidationError("Invalid role", field="role")
        return query.order_by(User.created_at.desc(), User.id.desc()).all()

    def set_active(self, db: Session, user: User, is_active: bool) -> User:
        user.is_active = is_active
        db.flush()
        logger.info(f"User {user.id} {'activated' if is_active else 'deactivated'}")
        return user

    def count_by_role(self, db: Session) -> Dict[str, int]:
        counts = {role.value: 0 for role in UserRole}
        for role, count in db.query(User.role, func.count(User.id)).group_by(User.role).all():
            key = role.value if isinstance(role, UserRole) else role
            counts[key] = count
        return counts
