"""
Course registration ledger.

Seat accounting invariant: 0 <= current_enrollment <= max_seats.

The seat counter only moves through guarded UPDATE statements, so the
capacity check and the increment are one statement. The registration row
moves through a guarded UPDATE as well (or an INSERT protected by the
(student_id, course_id) unique constraint), and both changes commit or roll
back together with the audit entry that describes them.
"""
import json
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Union

from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError as SQLAlchemyIntegrityError
from sqlalchemy.orm import Session

from database.models import (
    Course, Registration, RegistrationStatus, User, UserRole, AuditAction
)
from auth.security import CryptoCore, encode_base64url
from core.errors import (
    CourseNotFound, RegistrationNotFound, AlreadyRegistered, CourseFull,
    AuthorizationError, IntegrityError, ValidationError,
)
from core.logger import logger
from core.utils import utcnow, format_timestamp, parse_timestamp
from services.audit_service import AuditLedger

ACTION_FOR_STATUS = {
    RegistrationStatus.REGISTERED: AuditAction.COURSE_REGISTER,
    RegistrationStatus.DROPPED: AuditAction.COURSE_DROP,
}

PAYLOAD_ACTION = {
    AuditAction.COURSE_REGISTER: "REGISTER",
    AuditAction.COURSE_DROP: "DROP",
}


@dataclass(frozen=True)
class RegistrationVerification:
    valid: bool
    message: str


class RegistrationLedger:
    """Register/drop state machine per (student, course) pair."""

    def __init__(self, crypto: CryptoCore, audit: AuditLedger):
        self.crypto = crypto
        self.audit = audit

    # ------------------------------------------------------------------
    # Sealing: encrypted snapshot + keyed hash
    # ------------------------------------------------------------------

    def _seal(self, action: AuditAction, student_id: int, course_id: int) -> Dict[str, str]:
        timestamp = utcnow()
        payload = {
            "action": PAYLOAD_ACTION[action],
            "course_id": str(course_id),
            "student_id": str(student_id),
            "timestamp": format_timestamp(timestamp),
        }
        return {
            "encrypted_data": self.crypto.encrypt(payload),
            "integrity_hash": self.crypto.generate_action_hash(action.value, student_id, payload, timestamp),
        }

    # ------------------------------------------------------------------
    # Seat counter
    # ------------------------------------------------------------------

    @staticmethod
    def _take_seat(db: Session, course_id: int) -> bool:
        result = db.execute(
            update(Course)
            .where(Course.id == course_id, Course.current_enrollment < Course.max_seats)
            .values(current_enrollment=Course.current_enrollment + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _release_seat(db: Session, course_id: int) -> bool:
        result = db.execute(
            update(Course)
            .where(Course.id == course_id, Course.current_enrollment > 0)
            .values(current_enrollment=Course.current_enrollment - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def register(
        self,
        db: Session,
        student_id: int,
        course_id: int,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Register a student for a course.

        The registration window is checked by the caller.

        Raises:
            CourseNotFound: No such course
            AlreadyRegistered: An active registration exists for the pair
            CourseFull: No seat left

        Returns:
            Registration view
        """
        course = db.query(Course).filter(Course.id == course_id).first()
        if course is None:
            raise CourseNotFound()

        existing = db.query(Registration).filter(
            Registration.student_id == student_id,
            Registration.course_id == course_id,
        ).first()
        if existing is not None and existing.status == RegistrationStatus.REGISTERED:
            raise AlreadyRegistered()

        if not self._take_seat(db, course_id):
            db.rollback()
            logger.info(f"Course {course_id} full; registration by student {student_id} refused")
            raise CourseFull()

        sealed = self._seal(AuditAction.COURSE_REGISTER, student_id, course_id)
        now = utcnow()
        try:
            if existing is not None:
                # Reactivate the dropped row; the status guard loses to a concurrent reactivation
                reactivated = db.query(Registration).filter(
                    Registration.id == existing.id,
                    Registration.status == RegistrationStatus.DROPPED,
                ).update(
                    {
                        Registration.status: RegistrationStatus.REGISTERED,
                        Registration.encrypted_data: sealed["encrypted_data"],
                        Registration.integrity_hash: sealed["integrity_hash"],
                        Registration.registered_at: now,
                        Registration.dropped_at: None,
                    },
                    synchronize_session=False,
                )
                if reactivated != 1:
                    raise AlreadyRegistered()
                registration = existing
            else:
                registration = Registration(
                    student_id=student_id,
                    course_id=course_id,
                    status=RegistrationStatus.REGISTERED,
                    registered_at=now,
                    **sealed,
                )
                db.add(registration)
            db.flush()
        except SQLAlchemyIntegrityError:
            db.rollback()
            raise AlreadyRegistered()
        except AlreadyRegistered:
            db.rollback()
            raise

        self.audit.log(
            db,
            AuditAction.COURSE_REGISTER,
            user_id=student_id,
            resource_type="registration",
            resource_id=registration.id,
            details={"course_id": str(course_id), "course_code": course.code},
            ip_address=ip_address,
        )
        db.commit()
        db.refresh(registration)
        logger.info(f"Student {student_id} registered for course {course.code}")
        return self.to_dict(registration)

    def drop(
        self,
        db: Session,
        student_id: int,
        course_id: int,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Drop an active registration. The drop deadline is checked by the caller.

        Raises:
            CourseNotFound: No such course
            RegistrationNotFound: No active registration for the pair
        """
        course = db.query(Course).filter(Course.id == course_id).first()
        if course is None:
            raise CourseNotFound()

        registration = db.query(Registration).filter(
            Registration.student_id == student_id,
            Registration.course_id == course_id,
            Registration.status == RegistrationStatus.REGISTERED,
        ).first()
        if registration is None:
            raise RegistrationNotFound()

        sealed = self._seal(AuditAction.COURSE_DROP, student_id, course_id)
        dropped = db.query(Registration).filter(
            Registration.id == registration.id,
            Registration.status == RegistrationStatus.REGISTERED,
        ).update(
            {
                Registration.status: RegistrationStatus.DROPPED,
                Registration.encrypted_data: sealed["encrypted_data"],
                Registration.integrity_hash: sealed["integrity_hash"],
                Registration.dropped_at: utcnow(),
            },
            synchronize_session=False,
        )
        if dropped != 1:
            db.rollback()
            raise RegistrationNotFound()

        if not self._release_seat(db, course_id):
            logger.warning(f"Course {course_id} enrollment already zero while dropping registration {registration.id}")

        self.audit.log(
            db,
            AuditAction.COURSE_DROP,
            user_id=student_id,
            resource_type="registration",
            resource_id=registration.id,
            details={"course_id": str(course_id), "course_code": course.code},
            ip_address=ip_address,
        )
        db.commit()
        db.refresh(registration)
        logger.info(f"Student {student_id} dropped course {course.code}")
        return self.to_dict(registration)

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify_integrity(self, db: Session, reg_id: int) -> RegistrationVerification:
        """
        Check a registration's stored snapshot against its hash and columns.

        Tampering is reported in the result, not raised.

        Raises:
            RegistrationNotFound: No such registration
        """
        registration = db.query(Registration).filter(Registration.id == reg_id).first()
        if registration is None:
            raise RegistrationNotFound()

        action = ACTION_FOR_STATUS.get(registration.status)
        if action is None:
            return self._tampered(reg_id, "unknown status")
        try:
            payload = json.loads(self.crypto.decrypt(registration.encrypted_data))
            timestamp = parse_timestamp(payload["timestamp"])
        except IntegrityError:
            return self._tampered(reg_id, "ciphertext rejected")
        except (ValueError, KeyError, TypeError):
            return self._tampered(reg_id, "malformed snapshot")

        if (
            payload.get("action") != PAYLOAD_ACTION[action]
            or payload.get("student_id") != str(registration.student_id)
            or payload.get("course_id") != str(registration.course_id)
        ):
            return self._tampered(reg_id, "snapshot does not match record")

        if not self.crypto.verify_action_hash(
            action.value, registration.student_id, payload, timestamp, registration.integrity_hash
        ):
            return self._tampered(reg_id, "hash mismatch")
        return RegistrationVerification(True, "Integrity verified")

    @staticmethod
    def _tampered(reg_id: int, why: str) -> RegistrationVerification:
        logger.warning(f"Registration {reg_id} failed integrity verification: {why}")
        return RegistrationVerification(False, "Integrity check failed - possible tampering")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_student_registrations(
        self,
        db: Session,
        student_id: int,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = db.query(Registration, Course).join(Course, Registration.course_id == Course.id).filter(
            Registration.student_id == student_id
        )
        if status:
            try:
                query = query.filter(Registration.status == RegistrationStatus(status))
            except ValueError:
                raise ValidationError("Invalid status", field="status")

        results = []
        for registration, course in query.order_by(Registration.registered_at.desc()).all():
            results.append({
                "reg_id": registration.id,
                "course_id": course.id,
                "course_name": course.name,
                "course_code": course.code,
                "faculty_name": course.faculty.username if course.faculty else None,
                "status": registration.status.value,
                "registered_at": format_timestamp(registration.registered_at),
                "dropped_at": format_timestamp(registration.dropped_at) if registration.dropped_at else None,
                "encoded_course_id": encode_base64url(str(course.id)),
            })
        return results

    def get_enrolled_students(
        self,
        db: Session,
        course_id: int,
        requester_id: int,
        requester_role: Union[UserRole, str],
        ip_address: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Roster of a course. Faculty may only see their own courses.

        Raises:
            CourseNotFound: No such course
            AuthorizationError: Faculty requesting another instructor's roster
        """
        course = db.query(Course).filter(Course.id == course_id).first()
        if course is None:
            raise CourseNotFound()
        if UserRole(requester_role) == UserRole.FACULTY and course.faculty_id != requester_id:
            self.audit.log_and_commit(
                db,
                AuditAction.UNAUTHORIZED_ACCESS,
                user_id=requester_id,
                resource_type="course",
                resource_id=course_id,
                details={"attempted": "view_roster", "reason": "not_course_faculty"},
                ip_address=ip_address,
            )
            raise AuthorizationError("Access denied - not your course")

        rows = db.query(Registration, User).join(User, Registration.student_id == User.id).filter(
            Registration.course_id == course_id,
            Registration.status == RegistrationStatus.REGISTERED,
        ).order_by(Registration.registered_at.asc()).all()
        return [
            {
                "user_id": user.id,
                "username": user.username,
                "email": user.email,
                "registered_at": format_timestamp(registration.registered_at),
            }
            for registration, user in rows
        ]

    def check_ownership(self, db: Session, student_id: int, course_id: int) -> bool:
        """True if the student holds an active registration for the course."""
        return db.query(Registration.id).filter(
            Registration.student_id == student_id,
            Registration.course_id == course_id,
            Registration.status == RegistrationStatus.REGISTERED,
        ).first() is not None

    def get_stats(self, db: Session) -> Dict[str, Any]:
        counts = dict(
            db.query(Registration.status, func.count(Registration.id)).group_by(Registration.status).all()
        )
        enrollment_count = func.count(Registration.id).label("enrollment_count")
        top_courses = db.query(Course.id, Course.name, Course.code, enrollment_count).join(
            Registration, Registration.course_id == Course.id
        ).filter(
            Registration.status == RegistrationStatus.REGISTERED
        ).group_by(Course.id, Course.name, Course.code).order_by(
            enrollment_count.desc(), Course.code
        ).limit(5).all()

        return {
            "active_registrations": counts.get(RegistrationStatus.REGISTERED, 0),
            "dropped_registrations": counts.get(RegistrationStatus.DROPPED, 0),
            "top_courses": [
                {"course_id": cid, "course_name": name, "course_code": code, "enrollment_count": n}
                for cid, name, code, n in top_courses
            ],
        }

    @staticmethod
    def to_dict(registration: Registration) -> Dict[str, Any]:
        return {
            "reg_id": registration.id,
            "student_id": registration.student_id,
            "course_id": registration.course_id,
            "status": registration.status.value,
            "registered_at": format_timestamp(registration.registered_at),
            "dropped_at": format_timestamp(registration.dropped_at) if registration.dropped_at else None,
        }
