"""
Authentication endpoints: signup, two-step MFA login, logout and profile.
"""
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, EmailStr

from auth.dependencies import get_db_session, get_services, get_current_identity
from core.errors import ValidationError
from database.models import UserRole
from services.auth_service import Identity
from services.audit_service import client_ip
from services.container import CoreServices
from services.identity_service import public_user

router = APIRouter(prefix="/api/auth", tags=["authentication"])

SELF_SIGNUP_ROLES = {UserRole.STUDENT, UserRole.FACULTY}


# Request Models
class RegisterRequest(BaseModel):
    """Account signup. Admin accounts are created with scripts/create_admin.py."""
    username: str
    email: EmailStr
    password: str
    role: UserRole = UserRole.STUDENT


class LoginRequest(BaseModel):
    email: str
    password: str


class VerifyOTPRequest(BaseModel):
    """Login step 2."""
    user_id: int
    otp: str
    temp_session_id: str


class ResendOTPRequest(BaseModel):
    user_id: int
    temp_session_id: str


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(
    body: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    """Create a student or faculty account."""
    if body.role not in SELF_SIGNUP_ROLES:
        raise ValidationError("Role must be student or faculty", field="role")
    user = services.auth.register(
        db, body.username, body.email, body.password, body.role, ip_address=client_ip(request)
    )
    return {"success": True, "message": "User registered successfully", "user": user}


@router.post("/login")
async def login(
    body: LoginRequest,
    request: Request,
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    """
    Login step 1: verify credentials and email an OTP.
    Returns the temp session id needed for step 2.
    """
    result = await services.auth.login(db, body.email, body.password, ip_address=client_ip(request))
    return {
        "success": True,
        "message": "OTP sent to your email",
        "mfa_required": result["mfa_required"],
        "user_id": result["user_id"],
        "temp_session_id": result["temp_session_id"],
    }


@router.post("/verify-otp")
def verify_otp(
    body: VerifyOTPRequest,
    request: Request,
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    """Login step 2: redeem the OTP for an access token."""
    result = services.auth.verify_otp(
        db, body.user_id, body.otp, body.temp_session_id, ip_address=client_ip(request)
    )
    return {
        "success": True,
        "message": "Login successful",
        "token": result["token"],
        "session_id": result["session_id"],
        "expires_at": result["expires_at"],
        "user": result["user"],
    }


@router.post("/resend-otp")
async def resend_otp(
    body: ResendOTPRequest,
    request: Request,
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    sent = await services.auth.resend_otp(
        db, body.user_id, body.temp_session_id, ip_address=client_ip(request)
    )
    return {"success": True, "message": "New OTP sent to your email", "otp_sent": sent}


@router.post("/logout")
def logout(
    request: Request,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    services.auth.logout(db, identity, ip_address=client_ip(request))
    return {"success": True, "message": "Logged out successfully"}


@router.get("/me")
def get_profile(
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    """Current user's profile."""
    user = services.identity.get_user(db, identity.user_id)
    return {"success": True, "user": public_user(user)}
