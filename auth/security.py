"""
Cryptographic utilities for authentication and record integrity.
Includes password hashing, OTPs, Fernet encryption, keyed action hashes,
JWT access tokens, session tokens and URL-safe encoding.
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Tuple
import base64
import binascii
import hashlib
import hmac
import secrets
import uuid

import bcrypt
from cryptography.fernet import Fernet, InvalidToken
from jose import ExpiredSignatureError, JWTError, jwt

from core.errors import IntegrityError, TokenError, TokenFailure
from core.logger import logger
from core.utils import canonical_json, format_timestamp, utcnow
import config

TOKEN_TYPE_ACCESS = "access"


# OTP utilities
def generate_otp() -> str:
    """
    Generate a 6-digit numeric OTP from a CSPRNG.

    Returns:
        OTP string, uniform over 100000-999999
    """
    return str(100000 + secrets.randbelow(900000))


def hash_otp(otp: str) -> str:
    """SHA-256 of the OTP; OTPs are short-lived and rate limited, so a fast hash is enough."""
    return hashlib.sha256(otp.encode()).hexdigest()


def verify_otp(otp: str, stored_hash: str) -> bool:
    """Constant-time comparison of the OTP hash against the stored hash."""
    if not otp or not stored_hash:
        return False
    return secrets.compare_digest(hash_otp(otp), stored_hash)


# Token utilities
def generate_token(length: int = 32) -> str:
    """Random hex token of ``length`` bytes."""
    return secrets.token_hex(length)


def generate_session_id() -> str:
    return str(uuid.uuid4())


def hash_token(token: str) -> str:
    """
    Hash a bearer/session token for storage/comparison.

    Args:
        token: Token string

    Returns:
        Hex SHA-256 digest
    """
    return hashlib.sha256(token.encode()).hexdigest()


def verify_token_hash(provided_token: str, stored_hash: str) -> bool:
    provided_hash = hash_token(provided_token)
    return secrets.compare_digest(provided_hash, stored_hash)


# Encoding utilities
def encode_base64url(data: str) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data.encode()).decode().rstrip("=")


def decode_base64url(encoded: str) -> str:
    padding = "=" * (-len(encoded) % 4)
    return base64.urlsafe_b64decode(encoded + padding).decode("utf-8")


def derive_fernet_key(secret: str) -> bytes:
    """
    Turn configured key material into a Fernet key.

    A urlsafe-base64 32-byte key is used as-is; anything else is treated as
    a passphrase and hashed to 32 bytes.
    """
    try:
        key_bytes = base64.urlsafe_b64decode(secret.encode() + b"=" * (-len(secret) % 4))
    except (binascii.Error, ValueError):
        key_bytes = b""
    if len(key_bytes) != 32:
        key_bytes = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


class CryptoCore:
    """
    Keyed cryptographic operations.

    Constructed once at startup from configuration and passed to the services
    that need it. Key material is held in mutable buffers so ``close()`` can
    zero it on shutdown.
    """

    def __init__(
        self,
        encryption_key: str,
        integrity_key: str,
        jwt_secret: str,
        jwt_algorithm: str = "HS256",
        access_token_expire_minutes: int = 1440,
        bcrypt_rounds: int = 12,
    ):
        if not integrity_key or not jwt_secret:
            raise ValueError("Integrity key and JWT secret are required")
        self._fernet_key = bytearray(derive_fernet_key(encryption_key))
        self._integrity_key = bytearray(integrity_key.encode())
        self._jwt_secret = bytearray(jwt_secret.encode())
        self.jwt_algorithm = jwt_algorithm
        self.access_token_expire_minutes = access_token_expire_minutes
        self.bcrypt_rounds = bcrypt_rounds
        self._closed = False

    @classmethod
    def from_config(cls) -> "CryptoCore":
        """Build from the process configuration."""
        encryption_key = config.ENCRYPTION_KEY
        if not encryption_key:
            if config.ENVIRONMENT == "production":
                raise RuntimeError("ENCRYPTION_KEY must be set in production")
            logger.warning("ENCRYPTION_KEY not set, generating temporary key (not secure for production!)")
            encryption_key = Fernet.generate_key().decode()
        integrity_key = config.INTEGRITY_KEY
        if not integrity_key:
            integrity_key = hashlib.sha256(f"integrity:{config.SECRET_KEY}".encode()).hexdigest()
        return cls(
            encryption_key=encryption_key,
            integrity_key=integrity_key,
            jwt_secret=config.SECRET_KEY,
            jwt_algorithm=config.ALGORITHM,
            access_token_expire_minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES,
            bcrypt_rounds=config.BCRYPT_ROUNDS,
        )

    def close(self) -> None:
        """Zero key material. The instance is unusable afterwards."""
        for buf in (self._fernet_key, self._integrity_key, self._jwt_secret):
            for i in range(len(buf)):
                buf[i] = 0
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("CryptoCore has been closed")

    # Password utilities
    def generate_salt(self) -> str:
        return bcrypt.gensalt(rounds=self.bcrypt_rounds).decode("utf-8")

    @staticmethod
    def hash_password(password: str, salt: str) -> str:
        """
        Hash a password with bcrypt using the given salt.

        Note: Password validation should be done before calling this function.
        """
        password_bytes = password.encode("utf-8")
        if len(password_bytes) > 72:
            raise ValueError("Password cannot be longer than 72 bytes. Please use a shorter password.")
        return bcrypt.hashpw(password_bytes, salt.encode("utf-8")).decode("utf-8")

    @staticmethod
    def verify_password(plain_password: str, hashed_password: str) -> bool:
        """Verify a password against a bcrypt hash."""
        if not plain_password or not hashed_password:
            return False
        try:
            return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
        except ValueError:
            # Malformed stored hash or over-long password
            return False

    # Encryption utilities
    def encrypt(self, payload: Any) -> str:
        """
        Encrypt a payload using Fernet (AES-128-CBC + HMAC-SHA256).

        Args:
            payload: String, or any JSON-serialisable object

        Returns:
            Fernet token (urlsafe base64 string)
        """
        self._check_open()
        data = payload if isinstance(payload, str) else canonical_json(payload)
        return Fernet(bytes(self._fernet_key)).encrypt(data.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a Fernet token.

        Raises:
            IntegrityError: If the token was tampered with or the key is wrong
        """
        self._check_open()
        try:
            return Fernet(bytes(self._fernet_key)).decrypt(ciphertext.encode()).decode()
        except (InvalidToken, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Decryption failed: {type(e).__name__}")
            raise IntegrityError("Decryption failed") from e

    # Integrity utilities
    def generate_action_hash(
        self,
        action: str,
        actor_id: Optional[Any],
        detail: Any,
        timestamp: datetime,
    ) -> str:
        """
        Keyed hash of an action record.

        The HMAC input is the canonical JSON of action, actor, detail and the
        formatted timestamp. Actor falls back to ``"system"``.
        """
        self._check_open()
        message = canonical_json({
            "action": action,
            "actor": str(actor_id) if actor_id is not None else "system",
            "detail": detail,
            "timestamp": format_timestamp(timestamp),
        })
        return hmac.new(bytes(self._integrity_key), message.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_action_hash(
        self,
        action: str,
        actor_id: Optional[Any],
        detail: Any,
        timestamp: datetime,
        stored_hash: Optional[str],
    ) -> bool:
        if not stored_hash:
            return False
        expected = self.generate_action_hash(action, actor_id, detail, timestamp)
        return hmac.compare_digest(expected, stored_hash)

    # JWT Token utilities
    def create_access_token(
        self,
        user_id: int,
        username: str,
        role: str,
        session_id: str,
        expires_delta: Optional[timedelta] = None,
    ) -> Tuple[str, datetime]:
        """
        Create a signed access token bound to a session.

        Returns:
            Tuple of (encoded JWT, expiry)
        """
        self._check_open()
        issued_at = utcnow()
        expire = issued_at + (expires_delta or timedelta(minutes=self.access_token_expire_minutes))
        claims = {
            "sub": str(user_id),
            "username": username,
            "role": role,
            "sid": session_id,
            "type": TOKEN_TYPE_ACCESS,
            "iat": issued_at,
            "exp": expire,
        }
        token = jwt.encode(claims, bytes(self._jwt_secret), algorithm=self.jwt_algorithm)
        return token, expire

    def decode_access_token(self, token: str) -> Dict[str, Any]:
        """
        Decode and verify an access token.

        Raises:
            TokenError: EXPIRED for a past ``exp``, INVALID for anything else
        """
        self._check_open()
        try:
            payload = jwt.decode(token, bytes(self._jwt_secret), algorithms=[self.jwt_algorithm])
        except ExpiredSignatureError:
            raise TokenError(TokenFailure.EXPIRED)
        except JWTError:
            raise TokenError(TokenFailure.INVALID)
        if payload.get("type") != TOKEN_TYPE_ACCESS:
            raise TokenError(TokenFailure.INVALID)
        if not payload.get("sub") or not payload.get("sid") or not payload.get("role"):
            raise TokenError(TokenFailure.INVALID)
        return payload
