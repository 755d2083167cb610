"""
Startup wiring of the core services.

Everything is built from one CryptoCore and shared through
``app.state.services``.
"""
from dataclasses import dataclass
from typing import Optional

from auth.security import CryptoCore
from services.audit_service import AuditLedger
from services.policy_service import PolicyGate
from services.identity_service import IdentityStore
from services.session_service import SessionStore
from services.auth_service import AuthFlow
from services.registration_service import RegistrationLedger
from services.course_service import CourseService
from services.admin_service import AdminService
from services.email_service import EmailService


@dataclass
class CoreServices:
    crypto: CryptoCore
    audit: AuditLedger
    policies: PolicyGate
    identity: IdentityStore
    sessions: SessionStore
    auth: AuthFlow
    registrations: RegistrationLedger
    courses: CourseService
    admin: AdminService
    mailer: EmailService

    @classmethod
    def build(cls, crypto: CryptoCore, mailer: Optional[EmailService] = None) -> "CoreServices":
        mailer = mailer or EmailService.from_config()
        audit = AuditLedger(crypto)
        policies = PolicyGate(audit)
        identity = IdentityStore(crypto)
        sessions = SessionStore()
        registrations = RegistrationLedger(crypto, audit)
        courses = CourseService(audit)
        return cls(
            crypto=crypto,
            audit=audit,
            policies=policies,
            identity=identity,
            sessions=sessions,
            auth=AuthFlow(crypto, identity, sessions, audit, mailer),
            registrations=registrations,
            courses=courses,
            admin=AdminService(identity, sessions, audit, courses, registrations, policies),
            mailer=mailer,
        )

    def close(self) -> None:
        self.crypto.close()
