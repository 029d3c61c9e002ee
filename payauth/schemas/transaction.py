"""
Pydantic schemas for transaction records.

All monetary amounts are in integer minor units (paise).
"""

import uuid
from datetime import datetime

from pydantic import BaseModel


class StatusEventResponse(BaseModel):
    status: str
    reason: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class TransactionResponse(BaseModel):
    """Public representation of a transaction record."""
    id: uuid.UUID
    reference: str
    type: str
    direction: str
    amount_minor: int
    currency: str
    status: str
    auth_method: str
    auth_assurance: str | None
    description: str | None
    counterparty_account_id: uuid.UUID | None
    transfer_group_id: uuid.UUID | None
    balance_before: int | None
    balance_after: int | None
    failure_reason: str | None
    settlement_status: str | None
    created_at: datetime
    completed_at: datetime | None
    status_history: list[StatusEventResponse]

    model_config = {"from_attributes": True}


class GroupTotalResponse(BaseModel):
    count: int
    amount_minor: int


class TransactionStatsResponse(BaseModel):
    """Totals since the start of a period. Amounts count completed records only."""
    period: str
    start: datetime
    total_transactions: int
    total_spent_minor: int
    total_received_minor: int
    by_type: dict[str, GroupTotalResponse]
    by_auth_method: dict[str, GroupTotalResponse]
