"""
Transactions router: read the ledger and reconcile settlement.

Endpoints (scoped to the authenticated account):
  GET  /transactions                    List or search transactions (with filters)
  GET  /transactions/stats              Totals for a day, week, month or year
  GET  /transactions/{id}               Get a single transaction with its history
  POST /transactions/{id}/settlement    Retry settlement of a completed debit

Records are written only by the authorization flow and the self top-up.
"""

import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from payauth.database import get_db
from payauth.dependencies import get_current_account
from payauth.gateway import SettlementGateway, get_settlement_gateway
from payauth.models.account import Account
from payauth.schemas.transaction import TransactionResponse, TransactionStatsResponse
from payauth.services import ledger_service, settlement_service

router = APIRouter()


@router.get(
    "",
    response_model=list[TransactionResponse],
    summary="List your transactions",
)
async def list_transactions(
    type: str | None = Query(None, description="payment, transfer, recharge, bill_payment, add_money"),
    status: str | None = Query(None, description="pending, processing, completed, failed, cancelled"),
    direction: str | None = Query(None, description="credit or debit"),
    q: str | None = Query(None, min_length=1, max_length=100, description="Text in description or reference"),
    created_from: datetime | None = Query(None, description="Created at or after (ISO 8601)"),
    created_to: datetime | None = Query(None, description="Created at or before (ISO 8601)"),
    min_amount_minor: int | None = Query(None, ge=1),
    max_amount_minor: int | None = Query(None, ge=1),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """
    List the caller's transactions, newest first.

    Failed debits appear alongside completed ones; each carries its full
    status history. All filters combine; `q` matches description or
    reference case-insensitively, and the date and amount bounds are
    inclusive.
    """
    return await ledger_service.list_transactions(
        db=db,
        account_id=account.id,
        type_filter=type,
        status_filter=status,
        direction_filter=direction,
        search=q,
        created_from=created_from,
        created_to=created_to,
        min_amount_minor=min_amount_minor,
        max_amount_minor=max_amount_minor,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/stats",
    response_model=TransactionStatsResponse,
    summary="Totals for a period",
)
async def transaction_stats(
    period: Literal["day", "week", "month", "year"] = Query("month"),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """
    Count and total the caller's transactions since the start of the period.

    day, month and year are calendar periods in UTC; week is the last seven
    days. Amounts and breakdowns count completed records only.
    """
    stats = await ledger_service.transaction_stats(db, account.id, period)
    return TransactionStatsResponse.model_validate(asdict(stats))


@router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get a single transaction",
)
async def get_transaction(
    transaction_id: uuid.UUID,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await ledger_service.get_transaction(db, account.id, transaction_id)


@router.post(
    "/{transaction_id}/settlement",
    response_model=TransactionResponse,
    summary="Settle a completed debit now",
)
async def settle_transaction(
    transaction_id: uuid.UUID,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    gateway: SettlementGateway = Depends(get_settlement_gateway),
):
    """
    Run settlement for a record whose background settlement failed.

    Already settled records are returned unchanged. Transfers, credits and
    failed records cannot be settled (409).
    """
    record = await ledger_service.get_transaction(db, account.id, transaction_id)
    return await settlement_service.settle(db, record, gateway)
