"""
Course registration endpoints.
"""
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from sqlalchemy.orm import Session
from pydantic import BaseModel

from auth.dependencies import get_db_session, get_services, require_capability
from auth.permissions import Capability
from core.errors import PolicyClosed
from core.logger import logger
from services.auth_service import Identity
from services.audit_service import client_ip
from services.container import CoreServices

router = APIRouter(prefix="/api/registrations", tags=["registrations"])


class RegisterCourseRequest(BaseModel):
    course_id: int


async def send_confirmation(services: CoreServices, to_email: str, username: str, course_name: str, course_code: str):
    sent = await services.mailer.send_registration_confirmation(to_email, username, course_name, course_code)
    if not sent:
        logger.warning(f"Registration confirmation for {course_code} not delivered to {to_email}")


@router.get("/my")
def get_my_registrations(
    status_filter: Optional[str] = Query(None, alias="status", description="registered or dropped"),
    identity: Identity = Depends(require_capability(Capability.VIEW_OWN_REGISTRATIONS)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    registrations = services.registrations.get_student_registrations(db, identity.user_id, status_filter)
    return {"success": True, "count": len(registrations), "registrations": registrations}


@router.get("/stats")
def get_registration_stats(
    identity: Identity = Depends(require_capability(Capability.VIEW_STATS)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    return {"success": True, "stats": services.registrations.get_stats(db)}


@router.post("", status_code=status.HTTP_201_CREATED)
def register_for_course(
    body: RegisterCourseRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_capability(Capability.REGISTER_COURSE)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    """Register the calling student; the registration window must be open."""
    window = services.policies.is_registration_open(db)
    if not window.is_open:
        raise PolicyClosed(window.message)

    registration = services.registrations.register(
        db, identity.user_id, body.course_id, ip_address=client_ip(request)
    )

    student = services.identity.get_user(db, identity.user_id)
    course = services.courses.get_course(db, body.course_id)
    background_tasks.add_task(send_confirmation, services, student.email, student.username, course.name, course.code)

    return {"success": True, "message": "Successfully registered for course", "registration": registration}


@router.delete("/{course_id}")
def drop_course(
    course_id: int,
    request: Request,
    identity: Identity = Depends(require_capability(Capability.DROP_COURSE)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    """Drop the calling student's registration; the drop deadline must not have passed."""
    window = services.policies.is_drop_allowed(db)
    if not window.is_allowed:
        raise PolicyClosed(window.message)

    result = services.registrations.drop(db, identity.user_id, course_id, ip_address=client_ip(request))
    return {"success": True, "message": "Course dropped successfully", "result": result}


@router.get("/course/{course_id}/students")
def get_enrolled_students(
    course_id: int,
    request: Request,
    identity: Identity = Depends(require_capability(Capability.VIEW_ROSTER)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    """Roster; faculty only for courses they teach."""
    students = services.registrations.get_enrolled_students(
        db, course_id, identity.user_id, identity.role, ip_address=client_ip(request)
    )
    return {"success": True, "count": len(students), "students": students}


@router.get("/{reg_id}/verify")
def verify_registration(
    reg_id: int,
    identity: Identity = Depends(require_capability(Capability.VERIFY_INTEGRITY)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    result = services.registrations.verify_integrity(db, reg_id)
    return {"success": True, "valid": result.valid, "message": result.message}
