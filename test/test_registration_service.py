from concurrent.futures import ThreadPoolExecutor

import pytest

from core.errors import (
    AlreadyRegistered, AuthorizationError, CourseFull, CourseNotFound, RegistrationNotFound, ValidationError,
)
from database.models import AuditAction, AuditLog, Course, Registration, RegistrationStatus, UserRole


def enrollment(db, course_id):
    db.expire_all()
    return db.query(Course).filter(Course.id == course_id).one().current_enrollment


def test_register_takes_a_seat(db, services, student, course):
    view = services.registrations.register(db, student.id, course.id, ip_address="10.0.0.1")
    assert view["status"] == "registered"
    assert enrollment(db, course.id) == 1
    assert services.registrations.check_ownership(db, student.id, course.id)
    assert services.registrations.verify_integrity(db, view["reg_id"]).valid

    entry = db.query(AuditLog).filter(AuditLog.action == AuditAction.COURSE_REGISTER.value).one()
    assert entry.resource_id == str(view["reg_id"])


def test_double_registration(db, services, student, course):
    services.registrations.register(db, student.id, course.id)
    with pytest.raises(AlreadyRegistered):
        services.registrations.register(db, student.id, course.id)
    assert enrollment(db, course.id) == 1


def test_unknown_course(db, services, student):
    with pytest.raises(CourseNotFound):
        services.registrations.register(db, student.id, 999)


def test_course_full(db, services, make_user, course):
    first, second, third = (make_user(f"student_{i}") for i in range(3))
    services.registrations.register(db, first.id, course.id)
    services.registrations.register(db, second.id, course.id)
    with pytest.raises(CourseFull):
        services.registrations.register(db, third.id, course.id)
    assert enrollment(db, course.id) == 2


def test_drop_then_reregister_reuses_row(db, services, student, course):
    first = services.registrations.register(db, student.id, course.id)
    dropped = services.registrations.drop(db, student.id, course.id)
    assert dropped["status"] == "dropped"
    assert dropped["dropped_at"] is not None
    assert enrollment(db, course.id) == 0
    assert services.registrations.verify_integrity(db, first["reg_id"]).valid

    again = services.registrations.register(db, student.id, course.id)
    assert again["reg_id"] == first["reg_id"]
    assert again["dropped_at"] is None
    assert db.query(Registration).count() == 1
    assert enrollment(db, course.id) == 1
    assert services.registrations.verify_integrity(db, again["reg_id"]).valid


def test_drop_without_registration(db, services, student, course):
    with pytest.raises(RegistrationNotFound):
        services.registrations.drop(db, student.id, course.id)
    services.registrations.register(db, student.id, course.id)
    services.registrations.drop(db, student.id, course.id)
    with pytest.raises(RegistrationNotFound):
        services.registrations.drop(db, student.id, course.id)
    assert enrollment(db, course.id) == 0


@pytest.mark.parametrize("tamper", ["status", "encrypted_data", "integrity_hash", "student_id"])
def test_tampering_is_detected(db, services, make_user, student, course, tamper):
    reg_id = services.registrations.register(db, student.id, course.id)["reg_id"]
    registration = db.query(Registration).filter(Registration.id == reg_id).one()
    if tamper == "status":
        registration.status = RegistrationStatus.DROPPED
    elif tamper == "encrypted_data":
        registration.encrypted_data = services.crypto.encrypt({"action": "REGISTER"})
    elif tamper == "integrity_hash":
        registration.integrity_hash = "0" * 64
    else:
        registration.student_id = make_user("mallory").id
    db.commit()

    result = services.registrations.verify_integrity(db, reg_id)
    assert not result.valid
    assert result.message == "Integrity check failed - possible tampering"


def test_student_registrations_view(db, services, student, course):
    services.registrations.register(db, student.id, course.id)
    rows = services.registrations.get_student_registrations(db, student.id)
    assert rows[0]["course_code"] == "CS201"
    assert rows[0]["faculty_name"] == "prof_smith"
    assert rows[0]["encoded_course_id"]
    assert services.registrations.get_student_registrations(db, student.id, "dropped") == []
    with pytest.raises(ValidationError):
        services.registrations.get_student_registrations(db, student.id, "pending")


def test_roster_is_limited_to_own_courses(db, services, make_user, student, faculty, admin, course):
    services.registrations.register(db, student.id, course.id)
    roster = services.registrations.get_enrolled_students(db, course.id, faculty.id, UserRole.FACULTY)
    assert [s["username"] for s in roster] == ["alice"]
    assert len(services.registrations.get_enrolled_students(db, course.id, admin.id, UserRole.ADMIN)) == 1

    other = make_user("prof_other", role=UserRole.FACULTY)
    with pytest.raises(AuthorizationError, match="not your course"):
        services.registrations.get_enrolled_students(db, course.id, other.id, UserRole.FACULTY)
    denied = db.query(AuditLog).filter(AuditLog.action == AuditAction.UNAUTHORIZED_ACCESS.value).one()
    assert denied.user_id == other.id


def test_stats(db, services, make_user, student, course):
    bob = make_user("bob")
    services.registrations.register(db, student.id, course.id)
    services.registrations.register(db, bob.id, course.id)
    services.registrations.drop(db, bob.id, course.id)
    stats = services.registrations.get_stats(db)
    assert stats["active_registrations"] == 1
    assert stats["dropped_registrations"] == 1
    assert stats["top_courses"][0]["course_code"] == "CS201"
    assert stats["top_courses"][0]["enrollment_count"] == 1


def test_concurrent_registrations_never_oversell(database, services):
    with database.get_session() as db:
        view = services.courses.create_course(db, name="Seminar", code="SEM1", max_seats=1)
        students = [
            services.identity.create_user(db, f"racer_{i}", f"racer_{i}@uni.edu", "Abc12345!").id
            for i in range(6)
        ]
        db.commit()
    course_id = view["course_id"]

    def attempt(student_id):
        try:
            with database.get_session() as session:
                services.registrations.register(session, student_id, course_id)
            return True
        except CourseFull:
            return False

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(attempt, students))

    assert outcomes.count(True) == 1
    with database.get_session() as db:
        assert db.query(Course).filter(Course.id == course_id).one().current_enrollment == 1
        assert db.query(Registration).filter(Registration.course_id == course_id).count() == 1
