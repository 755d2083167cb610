"""
Session lifecycle: temp (pre-MFA) and full sessions bound to hashed tokens.
"""
from dataclasses import dataclass
from datetime import timedelta, datetime
from typing import Optional

from sqlalchemy.orm import Session

from database.models import Session as DBSession
from auth.security import generate_session_id, hash_token, verify_token_hash
from core.errors import SessionFailure, SESSION_MESSAGES
from core.logger import logger
from core.utils import utcnow


@dataclass(frozen=True)
class SessionValidation:
    valid: bool
    user_id: Optional[int] = None
    is_temp: bool = False
    failure: Optional[SessionFailure] = None

    @property
    def message(self) -> str:
        return "Session is valid" if self.valid else SESSION_MESSAGES[self.failure]


class SessionStore:
    """Stores sessions; never keeps a raw token."""

    def create_session(
        self,
        db: Session,
        user_id: int,
        token: str,
        is_temp: bool = False,
        ttl_hours: float = 24,
        session_id: Optional[str] = None,
    ) -> str:
        """
        Create a session bound to the SHA-256 of ``token``.

        Args:
            db: Database session
            user_id: Owning user
            token: Bearer token the client will present
            is_temp: True for the pre-MFA session
            ttl_hours: Absolute lifetime
            session_id: Pre-generated id, when the token has to embed it

        Returns:
            Session id
        """
        session = DBSession(
            id=session_id or generate_session_id(),
            user_id=user_id,
            token_hash=hash_token(token),
            is_temp=is_temp,
            is_valid=True,
            expires_at=utcnow() + timedelta(hours=ttl_hours),
        )
        db.add(session)
        db.flush()
        logger.info(f"Created {'temp' if is_temp else 'full'} session for user {user_id}")
        return session.id

    @staticmethod
    def _check(session: Optional[DBSession], now: datetime) -> Optional[SessionFailure]:
        if session is None:
            return SessionFailure.NOT_FOUND
        if not session.is_valid:
            return SessionFailure.INVALIDATED
        if now > session.expires_at:
            return SessionFailure.EXPIRED
        return None

    def validate_session(self, db: Session, session_id: str, token: str) -> SessionValidation:
        """
        Check that a session exists, is valid, unexpired and bound to ``token``.

        Expiry is checked here whether or not the sweep has run.
        """
        session = db.query(DBSession).filter(DBSession.id == session_id).first() if session_id else None
        failure = self._check(session, utcnow())
        if failure is None and not verify_token_hash(token or "", session.token_hash):
            failure = SessionFailure.TOKEN_MISMATCH
        if failure is not None:
            return SessionValidation(False, failure=failure)
        return SessionValidation(True, user_id=session.user_id, is_temp=session.is_temp)

    def check_handle(self, db: Session, session_id: str) -> SessionValidation:
        """
        Validate a session by id alone.

        Used for the temp session during OTP verification, whose token never
        leaves the server.
        """
        session = db.query(DBSession).filter(DBSession.id == session_id).first() if session_id else None
        failure = self._check(session, utcnow())
        if failure is not None:
            return SessionValidation(False, failure=failure)
        return SessionValidation(True, user_id=session.user_id, is_temp=session.is_temp)

    def get_active(self, db: Session, session_id: str) -> Optional[DBSession]:
        """Session by id if it is valid and unexpired, without a token check."""
        if not session_id:
            return None
        session = db.query(DBSession).filter(DBSession.id == session_id).first()
        if self._check(session, utcnow()) is not None:
            return None
        return session

    def invalidate_session(self, db: Session, session_id: str) -> int:
        """Mark a session invalid. Idempotent; returns 1 if this call invalidated it."""
        updated = db.query(DBSession).filter(
            DBSession.id == session_id, DBSession.is_valid.is_(True)
        ).update({DBSession.is_valid: False}, synchronize_session=False)
        if updated:
            logger.info(f"Invalidated session {session_id}")
        return updated

    def invalidate_all_for_user(self, db: Session, user_id: int) -> int:
        updated = db.query(DBSession).filter(
            DBSession.user_id == user_id, DBSession.is_valid.is_(True)
        ).update({DBSession.is_valid: False}, synchronize_session=False)
        logger.info(f"Invalidated {updated} session(s) for user {user_id}")
        return updated

    def purge_expired(self, db: Session, now: Optional[datetime] = None) -> int:
        """Delete sessions past their expiry. Returns rows removed."""
        removed = db.query(DBSession).filter(
            DBSession.expires_at < (now or utcnow())
        ).delete(synchronize_session=False)
        db.commit()
        if removed:
            logger.info(f"Purged {removed} expired session(s)")
        return removed
