"""
Session/identity gate: who is making this request, and did they recently
prove it with their password?

Sessions are rows in the `sessions` table. The bearer token is a signed JWT
naming the row ("sid") and the account ("sub"). validate() checks both the
signature AND the row, so:
  - logout revokes one session immediately
  - logout-all and password changes revoke every other session
  - deleting the account deletes its sessions, and their tokens stop working

Freshness:
  Registering or removing a credential, changing the password and setting
  the PIN are refused unless the password was re-entered in THIS session
  within FRESHNESS_WINDOW_SECONDS (confirm_password stamps
  reauthenticated_at). A stolen long-lived token alone cannot enroll a new
  device key.
"""

import logging
import uuid
from datetime import timedelta

from jose import JWTError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payauth import verifiers
from payauth.config import settings
from payauth.exceptions import InvalidCredentialsError, InvalidSessionError
from payauth.models.account import Account
from payauth.models.credential import AuthMethod
from payauth.models.session import AuthSession
from payauth.security import (
    create_session_token,
    decode_session_token,
    session_expiry,
)
from payauth.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


async def issue(
    db: AsyncSession,
    account_id: uuid.UUID,
    device_info: str | None = None,
    ip_address: str | None = None,
) -> tuple[AuthSession, str]:
    """
    Create a session for an account.

    Returns:
        Tuple of (AuthSession row, bearer token). The token is not stored.
    """
    now = utcnow()
    session = AuthSession(
        account_id=account_id,
        device_info=device_info[:255] if device_info else None,
        ip_address=ip_address,
        issued_at=now,
        expires_at=session_expiry(now),
        last_activity_at=now,
    )
    db.add(session)
    await db.flush()

    token = create_session_token(str(account_id), str(session.id), session.expires_at)
    logger.info("Issued session %s for account %s", session.id, account_id)
    return session, token


async def validate(db: AsyncSession, token: str) -> AuthSession:
    """
    Resolve a bearer token to its live session.

    Raises:
        InvalidSessionError: Bad signature, malformed claims, expired,
            revoked, or the session or account no longer exists.
    """
    try:
        payload = decode_session_token(token)
        account_id = uuid.UUID(payload["sub"])
        session_id = uuid.UUID(payload["sid"])
    except (JWTError, KeyError, TypeError, ValueError):
        raise InvalidSessionError()

    result = await db.execute(
        select(AuthSession).where(
            AuthSession.id == session_id,
            AuthSession.account_id == account_id,
        )
    )
    session = result.scalar_one_or_none()
    if session is None or session.revoked:
        raise InvalidSessionError()

    now = utcnow()
    if ensure_utc(session.expires_at) <= now:
        raise InvalidSessionError("Session expired")

    account_exists = await db.scalar(select(Account.id).where(Account.id == account_id))
    if account_exists is None:
        raise InvalidSessionError()

    session.last_activity_at = now
    return session


async def revoke(db: AsyncSession, session: AuthSession) -> None:
    if not session.revoked:
        session.revoked = True
        session.revoked_at = utcnow()
        await db.flush()
        logger.info("Revoked session %s", session.id)


async def revoke_all(
    db: AsyncSession,
    account_id: uuid.UUID,
    except_session_id: uuid.UUID | None = None,
) -> int:
    """
    Revoke every live session of an account, optionally keeping one.

    Returns:
        Number of sessions revoked.
    """
    stmt = (
        update(AuthSession)
        .where(AuthSession.account_id == account_id, AuthSession.revoked.is_(False))
        .values(revoked=True, revoked_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    if except_session_id is not None:
        stmt = stmt.where(AuthSession.id != except_session_id)
    result = await db.execute(stmt)
    logger.info("Revoked %d sessions for account %s", result.rowcount, account_id)
    return result.rowcount


def is_fresh(session: AuthSession) -> bool:
    """True if the password was re-entered in this session within the window."""
    confirmed_at = ensure_utc(session.reauthenticated_at)
    if confirmed_at is None:
        return False
    window = timedelta(seconds=settings.FRESHNESS_WINDOW_SECONDS)
    return utcnow() - confirmed_at <= window


async def check_password(db: AsyncSession, account: Account, password: str) -> bool:
    """Check the account password through the knowledge-factor verifier."""
    verifier = verifiers.VERIFIERS[AuthMethod.PASSWORD]
    result = await verifier.verify(db, account, {"password": password})
    return result.matched


async def confirm_password(
    db: AsyncSession,
    session: AuthSession,
    account: Account,
    password: str,
) -> AuthSession:
    """
    Re-check the account password and mark the session fresh.

    Raises:
        InvalidCredentialsError: If the password is wrong.
    """
    if not await check_password(db, account, password):
        logger.warning("Password confirmation failed for session %s", session.id)
        raise InvalidCredentialsError("Incorrect password")
    session.reauthenticated_at = utcnow()
    await db.flush()
    return session
