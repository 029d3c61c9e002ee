"""
Pydantic schemas for the account endpoints.

All monetary amounts are in integer minor units (paise): ₹10.50 = 1050.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class AccountResponse(BaseModel):
    """Public representation of the caller's account."""
    id: uuid.UUID
    email: str
    display_name: str
    phone: str | None
    balance_minor: int
    currency: str
    has_pin: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class AddMoneyRequest(BaseModel):
    """Request body for POST /accounts/me/add-money."""
    amount_minor: int = Field(gt=0, le=10_000_000, description="Amount in minor units")
    idempotency_key: str = Field(min_length=1, max_length=128)
    description: str | None = Field(None, max_length=255)


class BalanceVerificationResponse(BaseModel):
    """Cached balance compared with one recomputed from completed transactions."""
    account_id: uuid.UUID
    cached_balance_minor: int
    computed_balance_minor: int
    is_consistent: bool
