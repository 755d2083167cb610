"""
Authentication dependencies for FastAPI.
"""
from typing import Optional

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from auth.permissions import Capability, has_capability
from core.errors import AuthorizationError, TokenError, TokenFailure
from core.logger import logger
from database.models import AuditAction
from services.auth_service import Identity
from services.audit_service import client_ip
from services.container import CoreServices
import config

security = HTTPBearer(auto_error=False)


def get_db_session():
    """Get database session."""
    if not config.db:
        raise HTTPException(status_code=503, detail="Database not initialized")
    with config.db.get_session() as session:
        yield session


def get_services(request: Request) -> CoreServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
) -> Identity:
    """
    Resolve the caller from the bearer token.

    The token must verify, its session must be a valid full (post-OTP)
    session bound to this exact token, and the account must be active.

    Raises:
        TokenError, SessionError, MFARequired, AccountDeactivated
    """
    if credentials is None or not credentials.credentials:
        raise TokenError(TokenFailure.INVALID, "No token provided")
    return services.auth.authenticate(db, credentials.credentials)


def require_capability(capability: Capability):
    """
    Dependency factory for capability-based access control.

    Denials are written to the audit log before the 403 is returned.

    Args:
        capability: Capability the caller's role must grant

    Returns:
        Dependency function
    """
    async def capability_checker(
        request: Request,
        identity: Identity = Depends(get_current_identity),
        db: Session = Depends(get_db_session),
        services: CoreServices = Depends(get_services),
    ) -> Identity:
        if not has_capability(identity.role, capability):
            logger.warning(
                f"User {identity.user_id} ({identity.role.value}) denied {capability.value} "
                f"on {request.method} {request.url.path}"
            )
            services.audit.log_and_commit(
                db,
                AuditAction.UNAUTHORIZED_ACCESS,
                user_id=identity.user_id,
                details={
                    "attempted_role": identity.role.value,
                    "required_capability": capability.value,
                    "path": request.url.path,
                    "method": request.method,
                },
                ip_address=client_ip(request),
            )
            raise AuthorizationError()
        return identity

    return capability_checker
