#!/usr/bin/env python3
"""
Seed a development database with demo accounts, courses and policy windows.

Safe to re-run: existing users and courses are left alone.
"""
import sys
from pathlib import Path

# Add parent directory to the system path
sys.path.insert(0, str(Path(__file__).parent.parent))

from auth.security import CryptoCore
from core.errors import DuplicateError
from database.connection import Database
from database.models import Course, User, UserRole
from services.audit_service import AuditLedger
from services.course_service import CourseService
from services.identity_service import IdentityStore
from services.policy_service import PolicyGate
import config

DEMO_PASSWORD = "Passw0rd!"

DEMO_USERS = [
    ("admin", "admin@university.edu", UserRole.ADMIN),
    ("prof_smith", "smith@university.edu", UserRole.FACULTY),
    ("prof_jones", "jones@university.edu", UserRole.FACULTY),
    ("alice", "alice@university.edu", UserRole.STUDENT),
    ("bob", "bob@university.edu", UserRole.STUDENT),
]

# (code, name, max_seats, faculty username)
DEMO_COURSES = [
    ("CS101", "Introduction to Programming", 30, "prof_smith"),
    ("CS201", "Data Structures", 25, "prof_smith"),
    ("MATH150", "Discrete Mathematics", 40, "prof_jones"),
    ("SEC300", "Applied Cryptography", 2, "prof_jones"),
]


def seed():
    if config.ENVIRONMENT == "production":
        print("Refusing to seed demo data in production")
        sys.exit(1)

    config.db = Database(
        database_url=config.DATABASE_URL,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        sqlite_timeout=config.SQLITE_BUSY_TIMEOUT_SECONDS,
    )
    config.db.create_tables()
    crypto = CryptoCore.from_config()
    audit = AuditLedger(crypto)
    identity = IdentityStore(crypto)
    courses = CourseService(audit)
    policies = PolicyGate(audit)

    try:
        with config.db.get_session() as db:
            for username, email, role in DEMO_USERS:
                try:
                    identity.create_user(db, username, email, DEMO_PASSWORD, role=role)
                    db.commit()
                    print(f"  + user {username} ({role.value})")
                except DuplicateError:
                    db.rollback()
                    print(f"  = user {username} exists")

            admin = db.query(User).filter(User.username == "admin").first()
            for code, name, seats, faculty in DEMO_COURSES:
                if db.query(Course).filter(Course.code == code).first():
                    print(f"  = course {code} exists")
                    continue
                instructor = db.query(User).filter(User.username == faculty).first()
                courses.create_course(
                    db, name=name, code=code, max_seats=seats,
                    faculty_id=instructor.id if instructor else None,
                    actor_id=admin.id if admin else None,
                )
                print(f"  + course {code}")

            created = policies.seed_defaults(db)
            print(f"  + {created} policy setting(s)")
    finally:
        crypto.close()
        config.db.dispose()

    print(f"\nDone. Demo password for every account: {DEMO_PASSWORD}")


if __name__ == "__main__":
    seed()
