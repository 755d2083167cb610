"""
Shared fixtures. Environment is set before any project module imports config.
"""
import os
import tempfile
from pathlib import Path

_TEST_DIR = Path(tempfile.mkdtemp(prefix="course-registration-test-"))
os.environ.update({
    "ENVIRONMENT": "test",
    "DATABASE_URL": f"sqlite:///{_TEST_DIR / 'api.db'}",
    "LOG_DIR": str(_TEST_DIR / "logs"),
    "SECRET_KEY": "test-secret-key",
    "ENCRYPTION_KEY": "test-encryption-key",
    "INTEGRITY_KEY": "test-integrity-key",
    "BCRYPT_ROUNDS": "4",
    "SMTP_USER": "",
    "SMTP_PASSWORD": "",
    "RATE_LIMIT_PER_MINUTE": "10000",
    "RATE_LIMIT_PER_HOUR": "100000",
    "LOGIN_RATE_LIMIT": "10000",
    "OTP_RATE_LIMIT": "10000",
    "SIGNUP_RATE_LIMIT": "10000",
})

import pytest

from auth.security import CryptoCore
from database.connection import Database
from database.models import UserRole
from services.container import CoreServices

PASSWORD = "Abc12345!"


class FakeMailer:
    """Captures outgoing mail instead of sending it."""

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.otps = {}
        self.confirmations = []

    async def send_otp(self, to_email, otp, username):
        self.otps[to_email] = otp
        return self.deliver

    async def send_registration_confirmation(self, to_email, username, course_name, course_code):
        self.confirmations.append((to_email, course_code))
        return self.deliver


@pytest.fixture
def database(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'core.db'}", sqlite_timeout=30.0)
    database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def db(database):
    with database.get_session() as session:
        yield session


@pytest.fixture
def crypto():
    crypto = CryptoCore(
        encryption_key="test-encryption-key",
        integrity_key="test-integrity-key",
        jwt_secret="test-jwt-secret",
        bcrypt_rounds=4,
    )
    yield crypto
    crypto.close()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def services(crypto, mailer):
    return CoreServices.build(crypto, mailer=mailer)


@pytest.fixture
def make_user(db, services):
    def _make_user(username, email=None, role=UserRole.STUDENT, password=PASSWORD):
        user = services.identity.create_user(db, username, email or f"{username}@uni.edu", password, role)
        db.commit()
        return user
    return _make_user


@pytest.fixture
def student(make_user):
    return make_user("alice", "alice@uni.edu")


@pytest.fixture
def faculty(make_user):
    return make_user("prof_smith", "smith@uni.edu", UserRole.FACULTY)


@pytest.fixture
def admin(make_user):
    return make_user("root_admin", "admin@uni.edu", UserRole.ADMIN)


@pytest.fixture
def course(db, services, faculty, admin):
    view = services.courses.create_course(
        db, name="Data Structures", code="cs201", max_seats=2, faculty_id=faculty.id, actor_id=admin.id
    )
    return services.courses.get_course(db, view["course_id"])
