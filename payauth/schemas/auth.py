"""
Pydantic schemas for authentication and session endpoints.

These schemas define the request/response contracts for the auth API.
Pydantic validates incoming data automatically: if a required field is
missing or the wrong type, FastAPI returns a 422 error before our code
even runs.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


class SignupRequest(BaseModel):
    """Request body for POST /auth/signup."""
    email: EmailStr                                # Validates email format
    password: str = Field(min_length=8)            # Minimum 8 characters
    display_name: str = Field(min_length=1, max_length=100)
    phone: str | None = Field(None, max_length=20)


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""
    email: EmailStr
    password: str


class PasswordConfirmRequest(BaseModel):
    """Request body for POST /auth/confirm-password and DELETE /accounts/me."""
    password: str


class ChangePasswordRequest(BaseModel):
    """Request body for POST /auth/change-password."""
    current_password: str
    new_password: str = Field(min_length=8)


class SetPinRequest(BaseModel):
    """Request body for PUT /auth/pin. The PIN is 4 or 6 digits."""
    pin: str = Field(pattern=r"^(\d{4}|\d{6})$")


class TokenResponse(BaseModel):
    """Response body for successful login: contains the session token."""
    account_id: uuid.UUID
    token: str
    token_type: str = "bearer"


class SignupResponse(BaseModel):
    """Response body for successful signup: account info + session token."""
    account_id: uuid.UUID
    email: str
    display_name: str
    token: str
    token_type: str = "bearer"


class FreshnessResponse(BaseModel):
    """Response body for POST /auth/confirm-password."""
    reauthenticated_at: datetime
    fresh_for_seconds: int


class SessionsRevokedResponse(BaseModel):
    revoked_sessions: int
