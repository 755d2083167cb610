from datetime import timedelta

import pytest

from core.errors import (
    AccountDeactivated, DuplicateError, InvalidCredentials, OTPFailure, ValidationError,
)
from core.utils import utcnow
from database.models import User, UserRole
from conftest import PASSWORD


def test_create_user_normalizes_email_and_hashes_password(db, services):
    user = services.identity.create_user(db, "bob_1", "Bob@Uni.EDU", PASSWORD)
    db.commit()
    assert user.email == "bob@uni.edu"
    assert user.role == UserRole.STUDENT
    assert user.password_hash != PASSWORD
    assert user.password_salt


@pytest.mark.parametrize("username,email,password", [
    ("ab", "x@uni.edu", PASSWORD),
    ("good_name", "not-an-email", PASSWORD),
    ("good_name", "x@uni.edu", "short1!"),
    ("good_name", "x@uni.edu", "alllowercase1!"),
    ("good_name", "x@uni.edu", "NoDigitsHere!"),
    ("good_name", "x@uni.edu", "NoSpecial123"),
])
def test_create_user_validation(db, services, username, email, password):
    with pytest.raises(ValidationError):
        services.identity.create_user(db, username, email, password)


def test_duplicates_rejected(db, services, student):
    with pytest.raises(DuplicateError, match="Username already exists"):
        services.identity.create_user(db, "alice", "other@uni.edu", PASSWORD)
    with pytest.raises(DuplicateError, match="Email already registered"):
        services.identity.create_user(db, "alice2", "ALICE@uni.edu", PASSWORD)


def test_verify_credentials(db, services, student):
    assert services.identity.verify_credentials(db, "ALICE@uni.edu", PASSWORD).id == student.id
    with pytest.raises(InvalidCredentials) as wrong_password:
        services.identity.verify_credentials(db, "alice@uni.edu", "Wrong123!")
    with pytest.raises(InvalidCredentials) as unknown:
        services.identity.verify_credentials(db, "nobody@uni.edu", PASSWORD)
    assert wrong_password.value.message == unknown.value.message


def test_deactivated_account(db, services, student):
    services.identity.set_active(db, student, False)
    db.commit()
    with pytest.raises(AccountDeactivated):
        services.identity.verify_credentials(db, "alice@uni.edu", PASSWORD)


def test_otp_is_single_use(db, services, student):
    identity = services.identity
    identity.issue_otp_challenge(db, student, "123456")
    assert student.otp_hash != "123456"

    assert identity.verify_otp_challenge(db, student, "000000").failure == OTPFailure.MISMATCH
    assert identity.verify_otp_challenge(db, student, "123456").valid
    replay = identity.verify_otp_challenge(db, student, "123456")
    assert not replay.valid
    assert replay.failure == OTPFailure.NO_CHALLENGE


def test_otp_expiry(db, services, student):
    services.identity.issue_otp_challenge(db, student, "123456")
    student.otp_expiry = utcnow() - timedelta(seconds=1)
    result = services.identity.verify_otp_challenge(db, student, "123456")
    assert result.failure == OTPFailure.EXPIRED
    assert result.message == "OTP has expired"


def test_new_challenge_replaces_old(db, services, student):
    services.identity.issue_otp_challenge(db, student, "111111")
    services.identity.issue_otp_challenge(db, student, "222222")
    assert services.identity.verify_otp_challenge(db, student, "111111").failure == OTPFailure.MISMATCH
    assert services.identity.verify_otp_challenge(db, student, "222222").valid


def test_wrong_codes_burn_the_challenge(db, services, student):
    identity = services.identity
    identity.issue_otp_challenge(db, student, "123456")
    for _ in range(identity.max_otp_attempts - 1):
        assert identity.verify_otp_challenge(db, student, "000000").failure == OTPFailure.MISMATCH

    burned = identity.verify_otp_challenge(db, student, "000000")
    assert burned.failure == OTPFailure.ATTEMPTS_EXCEEDED
    assert student.otp_attempts == identity.max_otp_attempts
    # The right code is useless once the challenge is burned
    assert identity.verify_otp_challenge(db, student, "123456").failure == OTPFailure.NO_CHALLENGE

    identity.issue_otp_challenge(db, student, "654321")
    assert student.otp_attempts == 0
    assert identity.verify_otp_challenge(db, student, "654321").valid


def test_stale_read_cannot_redeem_twice(db, services, student):
    services.identity.issue_otp_challenge(db, student, "123456")
    # Another transaction redeems the code after this one loaded the user
    db.query(User).filter(User.id == student.id).update(
        {User.otp_used: True}, synchronize_session=False
    )
    assert student.otp_used is False

    result = services.identity.verify_otp_challenge(db, student, "123456")
    assert not result.valid
    assert result.failure == OTPFailure.NO_CHALLENGE


def test_count_by_role(db, services, student, faculty, admin):
    assert services.identity.count_by_role(db) == {"student": 1, "faculty": 1, "admin": 1}
    assert [u.username for u in services.identity.list_users(db, "faculty")] == ["prof_smith"]
    with pytest.raises(ValidationError):
        services.identity.list_users(db, "dean")
