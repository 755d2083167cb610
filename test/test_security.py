from datetime import datetime, timedelta

import pytest

from auth.security import (
    CryptoCore, generate_otp, hash_otp, verify_otp, hash_token, verify_token_hash,
    encode_base64url, decode_base64url,
)
from auth.permissions import Capability, has_capability
from core.errors import IntegrityError, TokenError, TokenFailure
from database.models import UserRole


def test_otp_is_six_digits():
    for _ in range(50):
        otp = generate_otp()
        assert len(otp) == 6 and otp.isdigit()
        assert otp[0] != "0"


def test_otp_hash_round_trip():
    stored = hash_otp("123456")
    assert verify_otp("123456", stored)
    assert not verify_otp("654321", stored)
    assert not verify_otp("", stored)


def test_token_hash_never_equals_token():
    token = "abc" * 10
    stored = hash_token(token)
    assert stored != token
    assert verify_token_hash(token, stored)
    assert not verify_token_hash(token + "x", stored)


def test_base64url_has_no_padding():
    encoded = encode_base64url("42")
    assert "=" not in encoded
    assert decode_base64url(encoded) == "42"


def test_password_hash_and_verify(crypto):
    salt = crypto.generate_salt()
    hashed = crypto.hash_password("Abc12345!", salt)
    assert hashed != "Abc12345!"
    assert crypto.verify_password("Abc12345!", hashed)
    assert not crypto.verify_password("Abc12345?", hashed)
    assert not crypto.verify_password("Abc12345!", "not-a-bcrypt-hash")


def test_password_longer_than_72_bytes_is_rejected(crypto):
    with pytest.raises(ValueError):
        crypto.hash_password("a" * 73, crypto.generate_salt())


def test_encrypt_decrypt_and_tamper(crypto):
    ciphertext = crypto.encrypt({"course_id": "1"})
    assert crypto.decrypt(ciphertext) == '{"course_id":"1"}'
    with pytest.raises(IntegrityError):
        crypto.decrypt(ciphertext[:20] + ("B" if ciphertext[20] == "A" else "A") + ciphertext[21:])


def test_action_hash_depends_on_every_input(crypto):
    ts = datetime(2026, 1, 1, 12, 0, 0)
    detail = {"course_id": "1"}
    digest = crypto.generate_action_hash("COURSE_REGISTER", 7, detail, ts)
    assert len(digest) == 64
    assert crypto.verify_action_hash("COURSE_REGISTER", 7, detail, ts, digest)
    assert not crypto.verify_action_hash("COURSE_DROP", 7, detail, ts, digest)
    assert not crypto.verify_action_hash("COURSE_REGISTER", 8, detail, ts, digest)
    assert not crypto.verify_action_hash("COURSE_REGISTER", 7, {"course_id": "2"}, ts, digest)
    assert not crypto.verify_action_hash("COURSE_REGISTER", 7, detail, ts + timedelta(microseconds=1), digest)


def test_action_hash_ignores_key_order(crypto):
    ts = datetime(2026, 1, 1)
    first = crypto.generate_action_hash("X", None, {"a": 1, "b": 2}, ts)
    second = crypto.generate_action_hash("X", None, {"b": 2, "a": 1}, ts)
    assert first == second


def test_access_token_claims(crypto):
    token, expires_at = crypto.create_access_token(3, "alice", "student", "sid-1")
    payload = crypto.decode_access_token(token)
    assert payload["sub"] == "3"
    assert payload["sid"] == "sid-1"
    assert payload["role"] == "student"
    assert payload["type"] == "access"
    assert expires_at > datetime.utcnow()


def test_expired_access_token(crypto):
    token, _ = crypto.create_access_token(3, "alice", "student", "sid-1", expires_delta=timedelta(seconds=-5))
    with pytest.raises(TokenError) as exc:
        crypto.decode_access_token(token)
    assert exc.value.failure == TokenFailure.EXPIRED


def test_token_signed_with_other_secret_is_invalid(crypto):
    other = CryptoCore("k", "i", "another-secret", bcrypt_rounds=4)
    token, _ = other.create_access_token(3, "alice", "student", "sid-1")
    with pytest.raises(TokenError) as exc:
        crypto.decode_access_token(token)
    assert exc.value.failure == TokenFailure.INVALID


def test_closed_crypto_refuses_work():
    crypto = CryptoCore("k", "i", "j", bcrypt_rounds=4)
    crypto.close()
    with pytest.raises(RuntimeError):
        crypto.encrypt("x")


def test_capabilities_per_role():
    assert has_capability(UserRole.STUDENT, Capability.REGISTER_COURSE)
    assert not has_capability(UserRole.STUDENT, Capability.VIEW_AUDIT_LOGS)
    assert has_capability(UserRole.FACULTY, Capability.VIEW_ROSTER)
    assert not has_capability(UserRole.FACULTY, Capability.REGISTER_COURSE)
    assert has_capability("admin", Capability.MANAGE_POLICIES)
    assert not has_capability(UserRole.ADMIN, Capability.REGISTER_COURSE)
    assert not has_capability("superuser", Capability.VIEW_COURSES)
