"""
Course catalogue endpoints.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session
from pydantic import BaseModel

from auth.dependencies import get_db_session, get_services, require_capability
from auth.permissions import Capability
from services.auth_service import Identity
from services.audit_service import client_ip
from services.container import CoreServices
from services.course_service import course_view

router = APIRouter(prefix="/api/courses", tags=["courses"])


class CourseCreate(BaseModel):
    course_name: str
    course_code: str
    max_seats: int
    description: Optional[str] = None
    faculty_id: Optional[int] = None


class CourseUpdate(BaseModel):
    """Partial update; omitted fields are left unchanged."""
    course_name: Optional[str] = None
    description: Optional[str] = None
    faculty_id: Optional[int] = None
    max_seats: Optional[int] = None


@router.get("")
def list_courses(
    identity: Identity = Depends(require_capability(Capability.VIEW_COURSES)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    courses = services.courses.list_courses(db)
    return {"success": True, "count": len(courses), "courses": courses}


@router.get("/available")
def list_available_courses(
    identity: Identity = Depends(require_capability(Capability.VIEW_AVAILABLE_COURSES)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    """Courses with open seats, plus whether registration is currently open."""
    courses = services.courses.list_available(db)
    window = services.policies.is_registration_open(db)
    return {"success": True, "count": len(courses), "courses": courses, "registration": window.to_dict()}


@router.get("/my-courses")
def list_my_courses(
    identity: Identity = Depends(require_capability(Capability.VIEW_OWN_COURSES)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    """Courses taught by the calling faculty member."""
    courses = services.courses.list_for_faculty(db, identity.user_id)
    return {"success": True, "count": len(courses), "courses": courses}


@router.get("/{course_id}")
def get_course(
    course_id: int,
    identity: Identity = Depends(require_capability(Capability.VIEW_COURSES)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    course = services.courses.get_course(db, course_id)
    return {"success": True, "course": course_view(course)}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_course(
    body: CourseCreate,
    request: Request,
    identity: Identity = Depends(require_capability(Capability.MANAGE_COURSES)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    course = services.courses.create_course(
        db,
        name=body.course_name,
        code=body.course_code,
        max_seats=body.max_seats,
        description=body.description,
        faculty_id=body.faculty_id,
        actor_id=identity.user_id,
        ip_address=client_ip(request),
    )
    return {"success": True, "message": "Course created successfully", "course": course}


@router.put("/{course_id}")
def update_course(
    course_id: int,
    body: CourseUpdate,
    request: Request,
    identity: Identity = Depends(require_capability(Capability.MANAGE_COURSES)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    fields = body.model_dump(exclude_unset=True)
    if "course_name" in fields:
        fields["name"] = fields.pop("course_name")
    course = services.courses.update_course(
        db, course_id, fields, actor_id=identity.user_id, ip_address=client_ip(request)
    )
    return {"success": True, "message": "Course updated successfully", "course": course}


@router.delete("/{course_id}")
def delete_course(
    course_id: int,
    request: Request,
    identity: Identity = Depends(require_capability(Capability.MANAGE_COURSES)),
    db: Session = Depends(get_db_session),
    services: CoreServices = Depends(get_services),
):
    services.courses.delete_course(db, course_id, actor_id=identity.user_id, ip_address=client_ip(request))
    return {"success": True, "message": "Course deleted successfully"}
