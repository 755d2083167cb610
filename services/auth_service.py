"""
Authentication flow: register, password login, OTP verification, logout.

Login is two steps. Step 1 checks the password, issues an OTP challenge and
opens a short-lived temp session. Step 2 redeems the OTP against that temp
session and replaces it with a full session bound to a signed access token.
Only full sessions pass ``authenticate``.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Dict, Any, Union

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from database.models import User, UserRole, AuditAction
from auth.security import CryptoCore, generate_otp, generate_token, generate_session_id
from core.errors import (
    InvalidCredentials, AccountDeactivated, OTPError, OTPFailure, SessionError, SessionFailure,
    MFARequired, TokenError, TokenFailure, UserNotFound,
)
from core.logger import logger
from core.utils import utcnow, format_timestamp
from core import validators
from services.identity_service import IdentityStore, public_user
from services.session_service import SessionStore, SessionValidation
from services.audit_service import AuditLedger
from services.email_service import EmailService
import config


@dataclass(frozen=True)
class Identity:
    """Authenticated caller, resolved from a bearer token and its full session."""
    user_id: int
    username: str
    role: UserRole
    session_id: str


def require_full_session(validation: SessionValidation) -> None:
    """
    MFA gate.

    Raises:
        SessionError: The session failed validation
        MFARequired: The session is a temp (pre-OTP) session
    """
    if not validation.valid:
        raise SessionError(validation.failure)
    if validation.is_temp:
        raise MFARequired()


class AuthFlow:
    """Orchestrates identity, sessions, OTP delivery and audit for login."""

    def __init__(
        self,
        crypto: CryptoCore,
        identity: IdentityStore,
        sessions: SessionStore,
        audit: AuditLedger,
        mailer: EmailService,
        session_ttl_hours: float = None,
        temp_session_ttl_hours: float = None,
    ):
        self.crypto = crypto
        self.identity = identity
        self.sessions = sessions
        self.audit = audit
        self.mailer = mailer
        self.session_ttl_hours = session_ttl_hours or config.SESSION_EXPIRE_HOURS
        self.temp_session_ttl_hours = temp_session_ttl_hours or config.TEMP_SESSION_EXPIRE_HOURS

    def register(
        self,
        db: Session,
        username: str,
        email: str,
        password: str,
        role: Union[UserRole, str] = UserRole.STUDENT,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create an account.

        Returns:
            Public user view
        """
        user = self.identity.create_user(db, username, email, password, role)
        self.audit.log(
            db,
            AuditAction.USER_REGISTER,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            details={"username": user.username, "email": user.email, "role": user.role.value},
            ip_address=ip_address,
        )
        db.commit()
        return public_user(user)

    async def login(
        self,
        db: Session,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Login step 1: verify the password and send an OTP.

        Raises:
            InvalidCredentials: Unknown email or wrong password
            AccountDeactivated: Account disabled by an administrator

        Returns:
            ``{"mfa_required": True, "user_id", "temp_session_id", "otp_sent"}``
        """
        try:
            # bcrypt is slow; keep it off the event loop
            user = await run_in_threadpool(self.identity.verify_credentials, db, email, password)
        except InvalidCredentials:
            self.audit.log_and_commit(
                db,
                AuditAction.LOGIN_FAILED,
                details={"email": (email or "").strip().lower(), "reason": "invalid_credentials"},
                ip_address=ip_address,
            )
            raise
        except AccountDeactivated:
            account = self.identity.find_by_email(db, email)
            self.audit.log_and_commit(
                db,
                AuditAction.LOGIN_FAILED,
                user_id=account.id if account else None,
                details={"email": (email or "").strip().lower(), "reason": "account_deactivated"},
                ip_address=ip_address,
            )
            raise

        otp = generate_otp()
        self.identity.issue_otp_challenge(db, user, otp)
        # Temp sessions are checked by handle only; the token is never returned
        temp_session_id = self.sessions.create_session(
            db, user.id, generate_token(), is_temp=True, ttl_hours=self.temp_session_ttl_hours
        )
        self.audit.log(
            db,
            AuditAction.LOGIN_ATTEMPT,
            user_id=user.id,
            resource_type="session",
            resource_id=temp_session_id,
            details={"step": "credentials_verified", "mfa": "otp_sent"},
            ip_address=ip_address,
        )
        db.commit()

        # Commit first: delivery is slow and best-effort
        otp_sent = await self.mailer.send_otp(user.email, otp, user.username)
        if not otp_sent:
            logger.warning(f"OTP delivery failed for user {user.id}; login continues")

        return {
            "mfa_required": True,
            "user_id": user.id,
            "temp_session_id": temp_session_id,
            "otp_sent": otp_sent,
        }

    def _load_user(self, db: Session, user_id: int, ip_address: Optional[str]) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if user is None:
            self.audit.log_and_commit(
                db, AuditAction.OTP_FAILED,
                details={"reason": "user_not_found", "claimed_user_id": user_id},
                ip_address=ip_address,
            )
            raise UserNotFound()
        return user

    def _check_temp_session(
        self,
        db: Session,
        user: User,
        temp_session_id: str,
        ip_address: Optional[str],
    ) -> None:
        """Require ``temp_session_id`` to be this user's live temp session."""
        validation = self.sessions.check_handle(db, temp_session_id)
        failure = validation.failure
        if validation.valid and (validation.user_id != user.id or not validation.is_temp):
            failure = SessionFailure.NOT_FOUND
        if failure is not None:
            self.audit.log_and_commit(
                db, AuditAction.OTP_FAILED,
                user_id=user.id,
                resource_type="session",
                resource_id=temp_session_id,
                details={"reason": f"session_{failure.value}"},
                ip_address=ip_address,
            )
            raise SessionError(failure)
        if not user.is_active:
            raise AccountDeactivated("Account is deactivated. Contact administrator.")

    def _otp_failed(
        self,
        db: Session,
        user: User,
        failure: OTPFailure,
        temp_session_id: str,
        ip_address: Optional[str],
    ) -> OTPError:
        self.audit.log_and_commit(
            db, AuditAction.OTP_FAILED,
            user_id=user.id,
            resource_type="session",
            resource_id=temp_session_id,
            details={"reason": failure.value},
            ip_address=ip_address,
        )
        return OTPError(failure)

    def verify_otp(
        self,
        db: Session,
        user_id: int,
        otp: str,
        temp_session_id: str,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Login step 2: redeem the OTP and open a full session.

        Raises:
            ValidationError: OTP is not six digits
            SessionError: Temp session missing, expired, used or not this user's
            OTPError: No live challenge, expired, wrong code or too many wrong codes

        Returns:
            ``{"token", "session_id", "expires_at", "user"}``
        """
        validators.ensure_valid(validators.validate_otp(otp), "otp")
        user = self._load_user(db, user_id, ip_address)
        # A consumed challenge is reported as such even though its temp session is gone too
        if not self.identity.has_live_challenge(user):
            raise self._otp_failed(db, user, OTPFailure.NO_CHALLENGE, temp_session_id, ip_address)
        self._check_temp_session(db, user, temp_session_id, ip_address)

        result = self.identity.verify_otp_challenge(db, user, otp)
        if not result.valid:
            raise self._otp_failed(db, user, result.failure, temp_session_id, ip_address)

        if self.sessions.invalidate_session(db, temp_session_id) != 1:
            # Another request already completed MFA on this temp session
            db.rollback()
            self.audit.log_and_commit(
                db, AuditAction.OTP_FAILED,
                user_id=user_id,
                resource_type="session",
                resource_id=temp_session_id,
                details={"reason": f"session_{SessionFailure.INVALIDATED.value}"},
                ip_address=ip_address,
            )
            raise SessionError(SessionFailure.INVALIDATED)

        # The token embeds the session id, so the id is minted first
        session_id = generate_session_id()
        ttl = timedelta(hours=self.session_ttl_hours)
        token, expires_at = self.crypto.create_access_token(
            user.id, user.username, user.role.value, session_id, expires_delta=ttl
        )
        self.sessions.create_session(
            db, user.id, token, is_temp=False, ttl_hours=self.session_ttl_hours, session_id=session_id
        )
        user.last_login = utcnow()
        self.audit.log(
            db,
            AuditAction.LOGIN_SUCCESS,
            user_id=user.id,
            resource_type="session",
            resource_id=session_id,
            details={"mfa": "otp"},
            ip_address=ip_address,
        )
        db.commit()
        logger.info(f"User {user.id} completed MFA login")

        return {
            "token": token,
            "session_id": session_id,
            "expires_at": format_timestamp(expires_at),
            "user": public_user(user),
        }

    async def resend_otp(
        self,
        db: Session,
        user_id: int,
        temp_session_id: str,
        ip_address: Optional[str] = None,
    ) -> bool:
        """
        Replace the OTP challenge and resend it. No new session is created.

        Returns:
            Whether delivery succeeded
        """
        user = self._load_user(db, user_id, ip_address)
        self._check_temp_session(db, user, temp_session_id, ip_address)
        otp = generate_otp()
        self.identity.issue_otp_challenge(db, user, otp)
        db.commit()
        return await self.mailer.send_otp(user.email, otp, user.username)

    def authenticate(self, db: Session, token: str) -> Identity:
        """
        Resolve a bearer token to an identity.

        Checks, in order: token signature and expiry, the bound session
        (exists, valid, unexpired, same token), the MFA gate, and that the
        account is still active.

        Raises:
            TokenError, SessionError, MFARequired, AccountDeactivated
        """
        if not token:
            raise TokenError(TokenFailure.INVALID)
        payload = self.crypto.decode_access_token(token)
        validation = self.sessions.validate_session(db, payload["sid"], token)
        require_full_session(validation)
        if str(validation.user_id) != str(payload["sub"]):
            raise TokenError(TokenFailure.INVALID)

        user = db.query(User).filter(User.id == validation.user_id).first()
        if user is None:
            raise TokenError(TokenFailure.INVALID)
        if not user.is_active:
            raise AccountDeactivated()
        return Identity(user_id=user.id, username=user.username, role=user.role, session_id=payload["sid"])

    def logout(self, db: Session, identity: Identity, ip_address: Optional[str] = None) -> None:
        self.sessions.invalidate_session(db, identity.session_id)
        self.audit.log(
            db,
            AuditAction.LOGOUT,
            user_id=identity.user_id,
            resource_type="session",
            resource_id=identity.session_id,
            details={"session_id": identity.session_id},
            ip_address=ip_address,
        )
        db.commit()
        logger.info(f"User {identity.user_id} logged out")
