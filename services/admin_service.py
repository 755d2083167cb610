"""
Administrative operations: account status and dashboard figures.
"""
from typing import Optional, Dict, Any, List

from sqlalchemy.orm import Session

from database.models import AuditAction
from core.errors import ValidationError
from core.logger import logger
from services.audit_service import AuditLedger
from services.identity_service import IdentityStore, public_user
from services.session_service import SessionStore
from services.course_service import CourseService
from services.registration_service import RegistrationLedger
from services.policy_service import PolicyGate


class AdminService:
    def __init__(
        self,
        identity: IdentityStore,
        sessions: SessionStore,
        audit: AuditLedger,
        courses: CourseService,
        registrations: RegistrationLedger,
        policies: PolicyGate,
    ):
        self.identity = identity
        self.sessions = sessions
        self.audit = audit
        self.courses = courses
        self.registrations = registrations
        self.policies = policies

    def list_users(self, db: Session, role: Optional[str] = None) -> List[Dict[str, Any]]:
        return [public_user(u) for u in self.identity.list_users(db, role)]

    def set_user_status(
        self,
        db: Session,
        admin_id: int,
        user_id: int,
        is_active: bool,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Activate or deactivate an account.

        Deactivation also invalidates every session the user holds.

        Raises:
            UserNotFound: No such user
            ValidationError: An admin trying to deactivate their own account
        """
        if user_id == admin_id and not is_active:
            raise ValidationError("Cannot deactivate your own account")

        user = self.identity.get_user(db, user_id)
        self.identity.set_active(db, user, is_active)
        if not is_active:
            self.sessions.invalidate_all_for_user(db, user.id)

        self.audit.log(
            db,
            AuditAction.USER_ACTIVATE if is_active else AuditAction.USER_DEACTIVATE,
            user_id=admin_id,
            resource_type="user",
            resource_id=user.id,
            details={"target_user": user.username, "is_active": is_active},
            ip_address=ip_address,
        )
        db.commit()
        return public_user(user)

    def dashboard(self, db: Session) -> Dict[str, Any]:
        users_by_role = self.identity.count_by_role(db)
        stats = self.registrations.get_stats(db)
        status = self.policies.get_status(db)
        logger.debug("Admin dashboard computed")
        return {
            "users": {"total": sum(users_by_role.values()), "by_role": users_by_role},
            "courses": {"total": self.courses.count(db)},
            "registrations": stats,
            "registration_window": status["registration"],
            "drop_window": status["drop"],
        }
