import pytest

from auth.security import generate_session_id
from core.errors import (
    AccountDeactivated, InvalidCredentials, MFARequired, OTPError, OTPFailure,
    SessionError, SessionFailure, TokenError, ValidationError,
)
from database.models import AuditAction, AuditLog, UserRole
from conftest import PASSWORD


def audit_actions(db):
    return [entry.action for entry in db.query(AuditLog).order_by(AuditLog.id).all()]


@pytest.fixture
def account(db, services):
    user = services.auth.register(db, "ab_user", "a@b.edu", PASSWORD, ip_address="10.0.0.1")
    return user


async def test_full_mfa_login(db, services, mailer, account):
    assert account["role"] == "student"

    with pytest.raises(InvalidCredentials):
        await services.auth.login(db, "a@b.edu", "Wrong123!")
    failed = db.query(AuditLog).filter(AuditLog.action == AuditAction.LOGIN_FAILED.value).one()
    assert failed.integrity_hash
    assert failed.user_id is None

    step_one = await services.auth.login(db, "a@b.edu", PASSWORD)
    assert step_one["mfa_required"] is True
    assert step_one["otp_sent"] is True
    otp = mailer.otps["a@b.edu"]

    wrong = "000000" if otp != "000000" else "111111"
    with pytest.raises(OTPError) as mismatch:
        services.auth.verify_otp(db, account["user_id"], wrong, step_one["temp_session_id"])
    assert mismatch.value.failure == OTPFailure.MISMATCH

    result = services.auth.verify_otp(db, account["user_id"], otp, step_one["temp_session_id"])
    identity = services.auth.authenticate(db, result["token"])
    assert identity.user_id == account["user_id"]
    assert identity.role == UserRole.STUDENT
    assert identity.session_id == result["session_id"]

    actions = audit_actions(db)
    assert actions[0] == AuditAction.USER_REGISTER.value
    assert AuditAction.LOGIN_ATTEMPT.value in actions
    assert AuditAction.OTP_FAILED.value in actions
    assert actions[-1] == AuditAction.LOGIN_SUCCESS.value


async def test_otp_replay_is_rejected(db, services, mailer, account):
    step_one = await services.auth.login(db, "a@b.edu", PASSWORD)
    otp = mailer.otps["a@b.edu"]
    services.auth.verify_otp(db, account["user_id"], otp, step_one["temp_session_id"])

    with pytest.raises(OTPError) as replay:
        services.auth.verify_otp(db, account["user_id"], otp, step_one["temp_session_id"])
    assert replay.value.failure == OTPFailure.NO_CHALLENGE


async def test_otp_bound_to_own_temp_session(db, services, mailer, account, student):
    mine = await services.auth.login(db, "a@b.edu", PASSWORD)
    theirs = await services.auth.login(db, "alice@uni.edu", PASSWORD)
    with pytest.raises(SessionError) as exc:
        services.auth.verify_otp(db, account["user_id"], mailer.otps["a@b.edu"], theirs["temp_session_id"])
    assert exc.value.failure == SessionFailure.NOT_FOUND

    # The challenge survives a rejected attempt
    result = services.auth.verify_otp(db, account["user_id"], mailer.otps["a@b.edu"], mine["temp_session_id"])
    assert result["token"]


def test_malformed_otp(db, services, account):
    with pytest.raises(ValidationError):
        services.auth.verify_otp(db, account["user_id"], "12ab", "whatever")


def test_temp_session_cannot_authenticate(db, services, crypto, account):
    session_id = generate_session_id()
    token, _ = crypto.create_access_token(account["user_id"], "ab_user", "student", session_id)
    services.sessions.create_session(db, account["user_id"], token, is_temp=True, session_id=session_id)
    db.commit()
    with pytest.raises(MFARequired):
        services.auth.authenticate(db, token)


def test_token_without_session_is_rejected(db, services, crypto, account):
    token, _ = crypto.create_access_token(account["user_id"], "ab_user", "student", generate_session_id())
    with pytest.raises(SessionError) as exc:
        services.auth.authenticate(db, token)
    assert exc.value.failure == SessionFailure.NOT_FOUND


def test_garbage_token(db, services):
    with pytest.raises(TokenError):
        services.auth.authenticate(db, "not.a.jwt")


async def test_logout_kills_session(db, services, mailer, account):
    step_one = await services.auth.login(db, "a@b.edu", PASSWORD)
    result = services.auth.verify_otp(db, account["user_id"], mailer.otps["a@b.edu"], step_one["temp_session_id"])
    identity = services.auth.authenticate(db, result["token"])

    services.auth.logout(db, identity)
    with pytest.raises(SessionError) as exc:
        services.auth.authenticate(db, result["token"])
    assert exc.value.failure == SessionFailure.INVALIDATED
    assert audit_actions(db)[-1] == AuditAction.LOGOUT.value


async def test_deactivated_user_cannot_login(db, services, account):
    user = services.identity.get_user(db, account["user_id"])
    services.identity.set_active(db, user, False)
    db.commit()
    with pytest.raises(AccountDeactivated):
        await services.auth.login(db, "a@b.edu", PASSWORD)
    failed = db.query(AuditLog).filter(AuditLog.action == AuditAction.LOGIN_FAILED.value).one()
    assert failed.user_id == account["user_id"]
    assert failed.details["reason"] == "account_deactivated"


async def test_login_continues_when_delivery_fails(db, services, mailer, account):
    mailer.deliver = False
    step_one = await services.auth.login(db, "a@b.edu", PASSWORD)
    assert step_one["otp_sent"] is False
    assert services.sessions.check_handle(db, step_one["temp_session_id"]).is_temp


async def test_resend_replaces_challenge(db, services, mailer, account):
    step_one = await services.auth.login(db, "a@b.edu", PASSWORD)
    first = mailer.otps["a@b.edu"]
    assert await services.auth.resend_otp(db, account["user_id"], step_one["temp_session_id"])
    second = mailer.otps["a@b.edu"]
    if first != second:
        with pytest.raises(OTPError):
            services.auth.verify_otp(db, account["user_id"], first, step_one["temp_session_id"])
    assert services.auth.verify_otp(db, account["user_id"], second, step_one["temp_session_id"])["token"]


async def test_wrong_codes_burn_login_challenge(db, services, mailer, account):
    step_one = await services.auth.login(db, "a@b.edu", PASSWORD)
    otp = mailer.otps["a@b.edu"]
    wrong = "000000" if otp != "000000" else "111111"

    failures = []
    for _ in range(services.identity.max_otp_attempts):
        with pytest.raises(OTPError) as exc:
            services.auth.verify_otp(db, account["user_id"], wrong, step_one["temp_session_id"])
        failures.append(exc.value.failure)
    assert failures[-1] == OTPFailure.ATTEMPTS_EXCEEDED
    assert set(failures[:-1]) == {OTPFailure.MISMATCH}

    with pytest.raises(OTPError) as exc:
        services.auth.verify_otp(db, account["user_id"], otp, step_one["temp_session_id"])
    assert exc.value.failure == OTPFailure.NO_CHALLENGE

    # A resend opens a fresh challenge with a fresh attempt budget
    assert await services.auth.resend_otp(db, account["user_id"], step_one["temp_session_id"])
    result = services.auth.verify_otp(db, account["user_id"], mailer.otps["a@b.edu"], step_one["temp_session_id"])
    assert result["token"]


async def test_temp_session_consumed_concurrently(db, services, mailer, account, monkeypatch):
    step_one = await services.auth.login(db, "a@b.edu", PASSWORD)
    # The other request invalidated the temp session first
    monkeypatch.setattr(services.sessions, "invalidate_session", lambda db, session_id: 0)

    with pytest.raises(SessionError) as exc:
        services.auth.verify_otp(db, account["user_id"], mailer.otps["a@b.edu"], step_one["temp_session_id"])
    assert exc.value.failure == SessionFailure.INVALIDATED
    assert audit_actions(db)[-1] == AuditAction.OTP_FAILED.value
    assert AuditAction.LOGIN_SUCCESS.value not in audit_actions(db)
