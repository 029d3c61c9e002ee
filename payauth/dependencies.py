"""
FastAPI dependencies for the session/identity gate.

Dependencies are reusable functions that FastAPI injects into route handlers.
They form a chain:

  get_current_session (bearer token -> live AuthSession)
      └── get_current_account (AuthSession -> Account)
              └── require_fresh_session (password re-entered recently)

Every protected endpoint declares one of these as a parameter. If a link
fails (missing, forged, expired or revoked token; stale session for a
sensitive operation) the request is rejected before the route handler runs.
A failed freshness check is always a rejection, never a downgrade to a
weaker check.
"""

import logging

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from payauth.database import get_db
from payauth.exceptions import AccountNotFoundError, FreshnessRequiredError, InvalidSessionError
from payauth.models.account import Account
from payauth.models.session import AuthSession
from payauth.services import account_service, session_service

logger = logging.getLogger(__name__)

# auto_error=False so a missing header is reported through InvalidSessionError
# with the same JSON shape as every other auth failure.
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> AuthSession:
    """
    Resolve the Authorization header to a live session.

    Raises:
        InvalidSessionError: If the token is missing, invalid, expired or revoked.
    """
    if credentials is None or not credentials.credentials:
        raise InvalidSessionError("Not authenticated")
    return await session_service.validate(db, credentials.credentials)


async def get_current_account(
    session: AuthSession = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Return the Account that owns the current session."""
    try:
        return await account_service.get_account(db, session.account_id)
    except AccountNotFoundError:
        raise InvalidSessionError()


async def require_fresh_session(
    session: AuthSession = Depends(get_current_session),
    account: Account = Depends(get_current_account),
) -> Account:
    """
    Require a password confirmation within FRESHNESS_WINDOW_SECONDS.

    Used by credential registration and removal, password change and PIN
    changes. The client obtains freshness with POST /auth/confirm-password.

    Raises:
        FreshnessRequiredError: If the session is not fresh.
    """
    if not session_service.is_fresh(session):
        logger.warning("Freshness check failed for session %s", session.id)
        raise FreshnessRequiredError()
    return account
