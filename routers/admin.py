"""
Administrator endpoints: users, policies and the audit ledger.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from pydantic import BaseModel

from auth.dependencies import get_db_session, get_services, require_capability
from auth.permissions import Capability
from services.auth_service import Identity
from services.audit_service import client_ip
from services.container import CoreServices

router = APIRouter(prefix="/api/admin", tags=["admin"])


class UserStatusUpdate(BaseModel):
    is_active: bool


class PolicyUpdate(BaseModel):
    setting_key: str
    setting_value: str


@router.get("/dashboard")
def get_dashboard(
    identity: Identity = Depends(require_capability(Capability.VIEW_STATS)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    return {"success": True, "dashboard": services.admin.dashboard(db)}


@router.get("/users")
def list_users(
    role: Optional[str] = Query(None, description="student, faculty or admin"),
    identity: Identity = Depends(require_capability(Capability.MANAGE_USERS)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    users = services.admin.list_users(db, role)
    return {"success": True, "count": len(users), "users": users}


@router.put("/users/{user_id}/status")
def set_user_status(
    user_id: int,
    body: UserStatusUpdate,
    request: Request,
    identity: Identity = Depends(require_capability(Capability.MANAGE_USERS)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    """Activate or deactivate an account. Deactivation ends all of its sessions."""
    user = services.admin.set_user_status(
        db, identity.user_id, user_id, body.is_active, ip_address=client_ip(request)
    )
    state = "activated" if body.is_active else "deactivated"
    return {"success": True, "message": f"User {state} successfully", "user": user}


@router.get("/policies")
def get_policies(
    identity: Identity = Depends(require_capability(Capability.MANAGE_POLICIES)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    return {
        "success": True,
        "policies": services.policies.get_all_policies(db),
        "status": services.policies.get_status(db),
    }


@router.put("/policies")
def update_policy(
    body: PolicyUpdate,
    request: Request,
    identity: Identity = Depends(require_capability(Capability.MANAGE_POLICIES)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    services.policies.set_policy(
        db, body.setting_key, body.setting_value, actor_id=identity.user_id, ip_address=client_ip(request)
    )
    return {
        "success": True,
        "message": "Policy updated successfully",
        "setting_key": body.setting_key,
        "setting_value": body.setting_value,
    }


@router.get("/audit-logs")
def get_audit_logs(
    action: Optional[str] = Query(None),
    user_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(require_capability(Capability.VIEW_AUDIT_LOGS)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    """Newest-first page of audit entries."""
    page = services.audit.get_logs(db, action=action, user_id=user_id, limit=limit, offset=offset)
    return {"success": True, **page}


@router.get("/audit-logs/{log_id}/verify")
def verify_audit_log(
    log_id: int,
    identity: Identity = Depends(require_capability(Capability.VERIFY_INTEGRITY)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    result = services.audit.verify_integrity(db, log_id)
    return {"success": True, "valid": result.valid, "message": result.message}
