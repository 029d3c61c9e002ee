"""
Security utilities: secret hashing, session JWTs, template encryption, challenges.

This module centralizes all cryptographic operations so they're easy to
audit and update. Four concerns are handled here:

1. SECRET HASHING (Argon2)
   - Account passwords and numeric transaction PINs are hashed with the same
     algorithm, into separate columns
   - passlib's CryptContext verifies in constant time

2. SESSION TOKENS (JSON Web Tokens)
   - The bearer token is a signed JWT carrying the account id ("sub") and the
     session row id ("sid")
   - Unlike a purely stateless JWT, every request also checks the session row,
     so logout and account deletion take effect immediately

3. TEMPLATE ENCRYPTION (Fernet)
   - Face embeddings, voice samples and device public keys are encrypted at
     rest with a key loaded from the environment

4. CHALLENGES
   - Device-bound ceremonies sign a fresh 32-byte challenge; the server keeps
     the issued value on the authorization attempt and compares in constant
     time when the assertion comes back
"""

import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet
from jose import jwt
from passlib.context import CryptContext

from payauth.config import settings


# ---------------------------------------------------------------------------
# 1. Secret hashing (Argon2)
# ---------------------------------------------------------------------------

# "deprecated='auto'" lets passlib verify old hashes after a scheme change
# while new secrets are hashed with the current scheme.
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def hash_secret(plain_secret: str) -> str:
    """
    Hash a password or PIN using Argon2id.

    Returns:
        An Argon2 hash string (e.g., "$argon2id$v=19$m=65536,t=3,p=4$...").
    """
    return pwd_context.hash(plain_secret)


def verify_secret(plain_secret: str, hashed_secret: str) -> bool:
    """Verify a password or PIN against a stored Argon2 hash (constant time)."""
    return pwd_context.verify(plain_secret, hashed_secret)


# ---------------------------------------------------------------------------
# 2. Session tokens
# ---------------------------------------------------------------------------


def create_session_token(account_id: str, session_id: str, expires_at: datetime) -> str:
    """
    Create a signed JWT for a session row.

    The token payload contains:
      - "sub": The account id
      - "sid": The AuthSession id, checked against the database on every call
      - "exp": Expiration timestamp, matching the session row's expires_at
    """
    payload = {"sub": account_id, "sid": session_id, "exp": expires_at}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_session_token(token: str) -> dict:
    """
    Decode and verify a session JWT.

    Raises:
        JWTError: If the token is expired, tampered with, or invalid.
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


def session_expiry(issued_at: datetime | None = None) -> datetime:
    issued_at = issued_at or datetime.now(timezone.utc)
    return issued_at + timedelta(minutes=settings.SESSION_EXPIRE_MINUTES)


# ---------------------------------------------------------------------------
# 3. Template encryption (Fernet)
# ---------------------------------------------------------------------------

_fernet = Fernet(settings.TEMPLATE_ENCRYPTION_KEY.encode())


def encrypt_template(plaintext: bytes) -> bytes:
    """Encrypt a serialized credential template for a LargeBinary column."""
    return _fernet.encrypt(plaintext)


def decrypt_template(ciphertext: bytes) -> bytes:
    """
    Decrypt a stored credential template.

    Raises:
        cryptography.fernet.InvalidToken: If the data is corrupted or
            the encryption key doesn't match.
    """
    return _fernet.decrypt(ciphertext)


def keyed_digest(value: str) -> str:
    """HMAC-SHA256 of an opaque template, keyed by SECRET_KEY."""
    return hmac.new(
        settings.SECRET_KEY.encode(), value.encode(), hashlib.sha256
    ).hexdigest()


# ---------------------------------------------------------------------------
# 4. Challenges and base64url
# ---------------------------------------------------------------------------


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Decode base64url with or without padding."""
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def generate_challenge() -> str:
    """Return a fresh 32-byte challenge, base64url encoded."""
    return b64url_encode(secrets.token_bytes(32))
