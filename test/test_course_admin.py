import pytest

from core.errors import CourseNotFound, DuplicateError, SessionFailure, ValidationError
from database.models import AuditAction, AuditLog, Registration, UserRole


def test_course_code_is_unique_and_uppercased(db, services, course):
    assert course.code == "CS201"
    with pytest.raises(DuplicateError):
        services.courses.create_course(db, name="Another", code="CS201", max_seats=10)


@pytest.mark.parametrize("max_seats", [0, 501])
def test_seat_limits(db, services, max_seats):
    with pytest.raises(ValidationError):
        services.courses.create_course(db, name="Big Lecture", code="BIG1", max_seats=max_seats)


def test_faculty_must_be_faculty(db, services, student):
    with pytest.raises(ValidationError):
        services.courses.create_course(db, name="Algorithms", code="CS300", max_seats=10, faculty_id=student.id)


def test_shrinking_below_enrollment_is_refused(db, services, make_user, course):
    services.registrations.register(db, make_user("stu_1").id, course.id)
    services.registrations.register(db, make_user("stu_2").id, course.id)
    with pytest.raises(ValidationError):
        services.courses.update_course(db, course.id, {"max_seats": 1})
    updated = services.courses.update_course(db, course.id, {"max_seats": 3, "name": "Data Structures II"})
    assert updated["max_seats"] == 3
    assert updated["available_seats"] == 1
    assert updated["course_name"] == "Data Structures II"


def test_delete_requires_empty_course(db, services, student, course):
    services.registrations.register(db, student.id, course.id)
    with pytest.raises(ValidationError):
        services.courses.delete_course(db, course.id)

    services.registrations.drop(db, student.id, course.id)
    services.courses.delete_course(db, course.id)
    with pytest.raises(CourseNotFound):
        services.courses.get_course(db, course.id)
    assert db.query(Registration).count() == 0
    assert db.query(AuditLog).filter(AuditLog.action == AuditAction.COURSE_DELETE.value).count() == 1


def test_available_and_faculty_listings(db, services, make_user, faculty, course):
    services.registrations.register(db, make_user("stu_1").id, course.id)
    services.registrations.register(db, make_user("stu_2").id, course.id)
    assert services.courses.list_available(db) == []
    assert [c["course_code"] for c in services.courses.list_for_faculty(db, faculty.id)] == ["CS201"]


def test_deactivation_revokes_sessions(db, services, admin, student):
    session_id = services.sessions.create_session(db, student.id, "token")
    db.commit()
    view = services.admin.set_user_status(db, admin.id, student.id, False)
    assert view["is_active"] is False
    assert services.sessions.check_handle(db, session_id).failure == SessionFailure.INVALIDATED
    entry = db.query(AuditLog).filter(AuditLog.action == AuditAction.USER_DEACTIVATE.value).one()
    assert entry.user_id == admin.id


def test_admin_cannot_deactivate_self(db, services, admin):
    with pytest.raises(ValidationError):
        services.admin.set_user_status(db, admin.id, admin.id, False)


def test_dashboard(db, services, student, course):
    services.registrations.register(db, student.id, course.id)
    dashboard = services.admin.dashboard(db)
    assert dashboard["users"]["total"] == 3
    assert dashboard["users"]["by_role"][UserRole.STUDENT.value] == 1
    assert dashboard["courses"]["total"] == 1
    assert dashboard["registrations"]["active_registrations"] == 1
    assert dashboard["registration_window"]["allowed"] is True
