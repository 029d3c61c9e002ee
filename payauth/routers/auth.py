"""
Authentication router: signup, login, sessions and secrets.

Endpoints:
  POST /auth/signup            Register and get a session token (public)
  POST /auth/login             Authenticate and get a session token (public)
  POST /auth/logout            Revoke the current session
  POST /auth/logout-all        Revoke every session of the account
  POST /auth/confirm-password  Re-enter the password; makes the session fresh
  POST /auth/change-password   Fresh session required; signs out other devices
  PUT  /auth/pin               Fresh session required; sets the transaction PIN

Security audit notes:
  - Plaintext passwords and PINs exist only in memory during request
    processing; they are hashed before any database operation and never
    logged.
  - Signup and login are throttled per client IP (429 with Retry-After).
  - Session tokens appear only in response bodies, which are not logged by
    uvicorn (it logs method, path, and status code only).
"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from payauth.config import settings
from payauth.database import get_db
from payauth.dependencies import get_current_account, get_current_session, require_fresh_session
from payauth.models.account import Account
from payauth.models.session import AuthSession
from payauth.rate_limit import login_limit, signup_limit
from payauth.schemas.account import AccountResponse
from payauth.schemas.auth import (
    ChangePasswordRequest,
    FreshnessResponse,
    LoginRequest,
    PasswordConfirmRequest,
    SessionsRevokedResponse,
    SetPinRequest,
    SignupRequest,
    SignupResponse,
    TokenResponse,
)
from payauth.services import auth_service, session_service

router = APIRouter()


def _client_meta(raw_request: Request) -> dict:
    return {
        "device_info": raw_request.headers.get("user-agent"),
        "ip_address": raw_request.client.host if raw_request.client else None,
    }


@router.post(
    "/signup",
    response_model=SignupResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(signup_limit)],
    summary="Register a new account",
)
async def signup(
    request: SignupRequest,
    raw_request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Register a new wallet holder.

    Creates the Account with a zero balance and no PIN, then opens a session
    so the holder is immediately logged in.

    - **email**: Must be a valid email format and not already registered
    - **password**: Minimum 8 characters
    - **display_name**: Required, 1-100 characters
    - **phone**: Optional
    """
    account, token = await auth_service.signup(
        db=db,
        email=request.email,
        password=request.password,
        display_name=request.display_name,
        phone=request.phone,
        **_client_meta(raw_request),
    )
    return SignupResponse(
        account_id=account.id,
        email=account.email,
        display_name=account.display_name,
        token=token,
    )


@router.post(
    "/login",
    response_model=TokenResponse,
    dependencies=[Depends(login_limit)],
    summary="Log in and get a session token",
)
async def login(
    request: LoginRequest,
    raw_request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Authenticate with email and password.

    Returns a session token to use in the Authorization header:
    `Authorization: Bearer <token>`
    """
    account, token = await auth_service.login(
        db=db,
        email=request.email,
        password=request.password,
        **_client_meta(raw_request),
    )
    return TokenResponse(account_id=account.id, token=token)


@router.post(
    "/logout",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Revoke the current session",
)
async def logout(
    session: AuthSession = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
):
    await auth_service.logout(db, session)


@router.post(
    "/logout-all",
    response_model=SessionsRevokedResponse,
    summary="Revoke every session of the account",
)
async def logout_all(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    revoked = await auth_service.logout_all(db, account)
    return SessionsRevokedResponse(revoked_sessions=revoked)


@router.post(
    "/confirm-password",
    response_model=FreshnessResponse,
    summary="Re-enter the password to unlock sensitive operations",
)
async def confirm_password(
    request: PasswordConfirmRequest,
    session: AuthSession = Depends(get_current_session),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """
    Mark the current session fresh.

    Credential registration and removal, password change and PIN changes
    are accepted for FRESHNESS_WINDOW_SECONDS after this call.
    """
    session = await session_service.confirm_password(db, session, account, request.password)
    return FreshnessResponse(
        reauthenticated_at=session.reauthenticated_at,
        fresh_for_seconds=settings.FRESHNESS_WINDOW_SECONDS,
    )


@router.post(
    "/change-password",
    response_model=SessionsRevokedResponse,
    summary="Change the account password",
)
async def change_password(
    request: ChangePasswordRequest,
    session: AuthSession = Depends(get_current_session),
    account: Account = Depends(require_fresh_session),
    db: AsyncSession = Depends(get_db),
):
    """Change the password. Every other session of the account is revoked."""
    revoked = await auth_service.change_password(
        db, account, session, request.current_password, request.new_password,
    )
    return SessionsRevokedResponse(revoked_sessions=revoked)


@router.put(
    "/pin",
    response_model=AccountResponse,
    summary="Set or replace the transaction PIN",
)
async def set_pin(
    request: SetPinRequest,
    account: Account = Depends(require_fresh_session),
    db: AsyncSession = Depends(get_db),
):
    """
    Set the 4 or 6 digit transaction PIN.

    The PIN authorizes payments when no credential is enrolled.
    """
    return await auth_service.set_pin(db, account, request.pin)
