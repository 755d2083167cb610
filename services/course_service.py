"""
Course catalogue management.
"""
from typing import Optional, Dict, Any, List

from sqlalchemy import update, delete
from sqlalchemy.exc import IntegrityError as SQLAlchemyIntegrityError
from sqlalchemy.orm import Session

from database.models import Course, User, UserRole, Registration, RegistrationStatus, AuditAction
from core.errors import CourseNotFound, DuplicateError, ValidationError
from core.logger import logger
from core import validators
from services.audit_service import AuditLedger


def course_view(course: Course) -> Dict[str, Any]:
    return {
        "course_id": course.id,
        "course_name": course.name,
        "course_code": course.code,
        "description": course.description or "",
        "faculty_id": course.faculty_id,
        "faculty_name": course.faculty.username if course.faculty else None,
        "max_seats": course.max_seats,
        "current_enrollment": course.current_enrollment,
        "available_seats": course.available_seats,
    }


class CourseService:
    """Create, update, delete and list courses."""

    def __init__(self, audit: AuditLedger):
        self.audit = audit

    @staticmethod
    def _validate_faculty(db: Session, faculty_id: Optional[int]) -> Optional[int]:
        if faculty_id is None:
            return None
        faculty = db.query(User).filter(User.id == faculty_id).first()
        if faculty is None or faculty.role != UserRole.FACULTY:
            raise ValidationError("Faculty user not found", field="faculty_id")
        return faculty.id

    def get_course(self, db: Session, course_id: int) -> Course:
        course = db.query(Course).filter(Course.id == course_id).first()
        if course is None:
            raise CourseNotFound()
        return course

    def list_courses(self, db: Session) -> List[Dict[str, Any]]:
        return [course_view(c) for c in db.query(Course).order_by(Course.code).all()]

    def list_available(self, db: Session) -> List[Dict[str, Any]]:
        """Courses with at least one free seat."""
        courses = db.query(Course).filter(
            Course.current_enrollment < Course.max_seats
        ).order_by(Course.code).all()
        return [course_view(c) for c in courses]

    def list_for_faculty(self, db: Session, faculty_id: int) -> List[Dict[str, Any]]:
        courses = db.query(Course).filter(Course.faculty_id == faculty_id).order_by(Course.code).all()
        return [course_view(c) for c in courses]

    def create_course(
        self,
        db: Session,
        name: str,
        code: str,
        max_seats: int,
        description: Optional[str] = None,
        faculty_id: Optional[int] = None,
        actor_id: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a course. The code is stored uppercase.

        Raises:
            ValidationError: Bad name, code, description, seats or faculty
            DuplicateError: Course code already exists
        """
        name = (name or "").strip()
        code = (code or "").strip().upper()
        validators.ensure_valid(validators.validate_course_name(name), "course_name")
        validators.ensure_valid(validators.validate_course_code(code), "course_code")
        validators.ensure_valid(validators.validate_description(description), "description")
        validators.ensure_valid(validators.validate_max_seats(max_seats), "max_seats")
        faculty_id = self._validate_faculty(db, faculty_id)

        if db.query(Course.id).filter(Course.code == code).first():
            raise DuplicateError("Course code already exists")

        course = Course(
            name=name,
            code=code,
            description=description or "",
            faculty_id=faculty_id,
            max_seats=max_seats,
            current_enrollment=0,
        )
        db.add(course)
        try:
            db.flush()
        except SQLAlchemyIntegrityError:
            db.rollback()
            raise DuplicateError("Course code already exists")

        self.audit.log(
            db,
            AuditAction.COURSE_CREATE,
            user_id=actor_id,
            resource_type="course",
            resource_id=course.id,
            details={"course_name": name, "course_code": code, "max_seats": max_seats},
            ip_address=ip_address,
        )
        db.commit()
        db.refresh(course)
        logger.info(f"Course created: {code}")
        return course_view(course)

    def update_course(
        self,
        db: Session,
        course_id: int,
        changes: Dict[str, Any],
        actor_id: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Apply a partial update.

        Supported keys: ``name``, ``description``, ``faculty_id`` (None
        unassigns) and ``max_seats``, which may not go below the current
        enrollment.
        """
        course = self.get_course(db, course_id)

        if "name" in changes and changes["name"] is not None:
            name = changes["name"].strip()
            validators.ensure_valid(validators.validate_course_name(name), "course_name")
            course.name = name
        if "description" in changes:
            validators.ensure_valid(validators.validate_description(changes["description"]), "description")
            course.description = changes["description"] or ""
        if "faculty_id" in changes:
            course.faculty_id = self._validate_faculty(db, changes["faculty_id"])
        db.flush()

        if "max_seats" in changes and changes["max_seats"] is not None:
            max_seats = changes["max_seats"]
            validators.ensure_valid(validators.validate_max_seats(max_seats), "max_seats")
            # Guarded so a concurrent registration cannot push enrollment above the new cap
            resized = db.execute(
                update(Course)
                .where(Course.id == course_id, Course.current_enrollment <= max_seats)
                .values(max_seats=max_seats)
                .execution_options(synchronize_session=False)
            ).rowcount
            if resized != 1:
                db.rollback()
                raise ValidationError("Max seats cannot be lower than current enrollment", field="max_seats")

        self.audit.log(
            db,
            AuditAction.COURSE_UPDATE,
            user_id=actor_id,
            resource_type="course",
            resource_id=course_id,
            details={"course_code": course.code, "changes": changes},
            ip_address=ip_address,
        )
        db.commit()
        db.refresh(course)
        logger.info(f"Course updated: {course.code}")
        return course_view(course)

    def delete_course(
        self,
        db: Session,
        course_id: int,
        actor_id: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """
        Delete a course with no active enrollment, along with its dropped registrations.

        Raises:
            CourseNotFound: No such course
            ValidationError: Course still has enrolled students
        """
        course = self.get_course(db, course_id)
        name, code = course.name, course.code

        db.execute(
            delete(Registration)
            .where(Registration.course_id == course_id, Registration.status == RegistrationStatus.DROPPED)
            .execution_options(synchronize_session=False)
        )
        deleted = db.execute(
            delete(Course)
            .where(Course.id == course_id, Course.current_enrollment == 0)
            .execution_options(synchronize_session=False)
        ).rowcount
        if deleted != 1:
            db.rollback()
            raise ValidationError("Cannot delete course with active enrollments")

        db.expunge(course)
        self.audit.log(
            db,
            AuditAction.COURSE_DELETE,
            user_id=actor_id,
            resource_type="course",
            resource_id=course_id,
            details={"course_name": name, "course_code": code},
            ip_address=ip_address,
        )
        db.commit()
        logger.info(f"Course deleted: {code}")

    def count(self, db: Session) -> int:
        return db.query(Course).count()
