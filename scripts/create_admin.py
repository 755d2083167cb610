#!/usr/bin/env python3
"""
Script to create an admin user.
"""
import getpass
import sys
from pathlib import Path

# Add parent directory to the system path
sys.path.insert(0, str(Path(__file__).parent.parent))

from auth.security import CryptoCore
from core.errors import CourseRegistrationError
from database.connection import Database
from database.models import AuditAction, UserRole
from services.audit_service import AuditLedger
from services.identity_service import IdentityStore
import config

def create_admin():
    """Create an admin user."""
    # Initialize database
    config.db = Database(
        database_url=config.DATABASE_URL,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        sqlite_timeout=config.SQLITE_BUSY_TIMEOUT_SECONDS,
    )
    config.db.create_tables()
    crypto = CryptoCore.from_config()
    identity = IdentityStore(crypto)
    audit = AuditLedger(crypto)

    print("Creating admin user...")
    print("=" * 50)

    # Get user input
    username = input("Username: ").strip()
    email = input("Email: ").strip()
    password = getpass.getpass("Password: ")

    if not username or not email or not password:
        print("Error: Username, email, and password are required")
        sys.exit(1)

    try:
        with config.db.get_session() as db:
            user = identity.create_user(db, username, email, password, role=UserRole.ADMIN)
            audit.log(
                db,
                AuditAction.USER_REGISTER,
                user_id=user.id,
                resource_type="user",
                resource_id=user.id,
                details={"username": user.username, "role": UserRole.ADMIN.value, "source": "create_admin"},
            )
            db.commit()
            print(f"\n✓ Admin user created successfully!")
            print(f"  Username: {user.username}")
            print(f"  Email: {user.email}")
            print(f"  Role: {user.role.value}")
    except CourseRegistrationError as e:
        print(f"\n✗ Error: {e.message}")
        sys.exit(1)
    finally:
        crypto.close()
        config.db.dispose()

if __name__ == "__main__":
    create_admin()
