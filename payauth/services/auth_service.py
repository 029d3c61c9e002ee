"""
Authentication service: signup, login, logout and secret management.

This module contains the identity logic, separated from HTTP concerns.
The router calls these functions and translates the results into HTTP
responses.

Signup flow:
  1. Check if email is already registered
  2. Hash the password with Argon2id
  3. Create the Account (zero balance, no PIN)
  4. Issue a session so the holder is immediately logged in

Login flow:
  1. Look up the account by email
  2. Verify password against stored hash
  3. Issue a new session (one per device)

Security notes:
  - Login returns the same error for "wrong password" and "email not found"
    to prevent user enumeration attacks
  - A password change revokes every other session of the account
  - Password and PIN changes require a fresh session (see dependencies.py)
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payauth.exceptions import DuplicateEmailError, InvalidCredentialsError
from payauth.models.account import Account
from payauth.models.session import AuthSession
from payauth.security import hash_secret
from payauth.services import session_service
from payauth.time_utils import utcnow

logger = logging.getLogger(__name__)


async def signup(
    db: AsyncSession,
    email: str,
    password: str,
    display_name: str,
    phone: str | None = None,
    device_info: str | None = None,
    ip_address: str | None = None,
) -> tuple[Account, str]:
    """
    Register a new account and log it in.

    Args:
        db: Database session.
        email: Login email (must be unique).
        password: Plaintext password (hashed before storage).
        display_name: Name shown to payment counterparties.
        phone: Optional phone number.
        device_info: User-Agent of the signing-up client.
        ip_address: Client IP, kept on the session for security review.

    Returns:
        Tuple of (Account instance, session token).

    Raises:
        DuplicateEmailError: If the email is already registered.
    """
    email = email.lower()
    existing = await db.execute(select(Account.id).where(Account.email == email))
    if existing.scalar_one_or_none() is not None:
        raise DuplicateEmailError(email)

    account = Account(
        email=email,
        display_name=display_name,
        phone=phone,
        hashed_password=hash_secret(password),
        balance_minor=0,
    )
    db.add(account)
    await db.flush()

    _, token = await session_service.issue(db, account.id, device_info, ip_address)
    logger.info("Signed up account %s", account.id)
    return account, token


async def login(
    db: AsyncSession,
    email: str,
    password: str,
    device_info: str | None = None,
    ip_address: str | None = None,
) -> tuple[Account, str]:
    """
    Authenticate with email and password and open a new session.

    Raises:
        InvalidCredentialsError: If email doesn't exist or password is wrong.
    """
    result = await db.execute(select(Account).where(Account.email == email.lower()))
    account = result.scalar_one_or_none()

    # Same error for both cases: prevents user enumeration
    if account is None or not await session_service.check_password(db, account, password):
        logger.warning("Failed login attempt")
        raise InvalidCredentialsError()

    _, token = await session_service.issue(db, account.id, device_info, ip_address)
    logger.info("Account %s logged in", account.id)
    return account, token


async def logout(db: AsyncSession, session: AuthSession) -> None:
    await session_service.revoke(db, session)


async def logout_all(db: AsyncSession, account: Account) -> int:
    """Revoke every session of the account, the current one included."""
    return await session_service.revoke_all(db, account.id)


async def change_password(
    db: AsyncSession,
    account: Account,
    session: AuthSession,
    current_password: str,
    new_password: str,
) -> int:
    """
    Replace the account password and sign out every other device.

    Returns:
        Number of other sessions revoked.

    Raises:
        InvalidCredentialsError: If current_password is wrong.
    """
    if not await session_service.check_password(db, account, current_password):
        raise InvalidCredentialsError("Current password is incorrect")

    account.hashed_password = hash_secret(new_password)
    account.updated_at = utcnow()
    await db.flush()

    revoked = await session_service.revoke_all(db, account.id, except_session_id=session.id)
    logger.info("Password changed for account %s", account.id)
    return revoked


async def set_pin(db: AsyncSession, account: Account, pin: str) -> Account:
    """
    Set or replace the numeric transaction PIN (4 or 6 digits).

    The PIN is the fallback authorization method for accounts without an
    active credential.
    """
    account.hashed_pin = hash_secret(pin)
    account.updated_at = utcnow()
    await db.flush()
    logger.info("Transaction PIN set for account %s", account.id)
    return account
