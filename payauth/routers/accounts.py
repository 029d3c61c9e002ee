"""
Accounts router: the caller's own wallet account.

Endpoints (all scoped to the authenticated account):
  GET    /accounts/me            Profile and cached balance
  GET    /accounts/me/balance    Cached balance checked against the ledger
  POST   /accounts/me/add-money  Self top-up; the only unauthenticated ledger path
  DELETE /accounts/me            Delete the account (password in body)

There is no way to address another holder's account here. Transfers name a
counterparty by id through /authorizations instead.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from payauth.database import get_db
from payauth.dependencies import get_current_account
from payauth.models.account import Account
from payauth.schemas.account import AccountResponse, AddMoneyRequest, BalanceVerificationResponse
from payauth.schemas.auth import PasswordConfirmRequest
from payauth.schemas.transaction import TransactionResponse
from payauth.services import account_service

router = APIRouter()


@router.get(
    "/me",
    response_model=AccountResponse,
    summary="Get your account",
)
async def get_my_account(account: Account = Depends(get_current_account)):
    return account


@router.get(
    "/me/balance",
    response_model=BalanceVerificationResponse,
    summary="Verify your balance against the ledger",
)
async def verify_my_balance(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """
    Return the cached balance alongside a balance recomputed from completed
    transaction records. `is_consistent` is false if they ever diverge.
    """
    return await account_service.verify_balance(db, account)


@router.post(
    "/me/add-money",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Top up your wallet",
)
async def add_money(
    request: AddMoneyRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """
    Credit the caller's own wallet.

    - **amount_minor**: Positive integer in minor units
    - **idempotency_key**: Replaying a key returns the original record
      instead of crediting twice
    """
    return await account_service.add_money(
        db,
        account,
        amount_minor=request.amount_minor,
        idempotency_key=request.idempotency_key,
        description=request.description,
    )


@router.delete(
    "/me",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete your account",
)
async def delete_my_account(
    request: PasswordConfirmRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """
    Permanently delete the account.

    Every session, credential and transaction record of the account is
    removed, and any authorization attempt still in flight is discarded.
    """
    await account_service.delete_account(db, account, request.password)
