"""
Account service: reads, self top-ups, balance verification and deletion.

Ownership enforcement:
  Every function takes the authenticated account (or its id) from the
  dependency layer. There is no way to reach another holder's account
  through this service.

Balance verification:
  `balance_minor` is a cached value maintained by the ledger. It must always
  equal the sum of completed credits minus completed debits. verify_balance()
  recomputes that sum so drift can be detected.

Deletion:
  Removing an account deletes its credentials, sessions, transaction records
  (with their history) and live authorization attempts in the same database
  transaction. Child rows are deleted explicitly rather than relying on
  ON DELETE CASCADE, which SQLite only honors with foreign keys enabled.
"""

import logging
import uuid

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payauth.attempts import registry
from payauth.exceptions import AccountNotFoundError, InvalidCredentialsError
from payauth.models.account import Account
from payauth.models.credential import Credential
from payauth.models.session import AuthSession
from payauth.models.transaction import (
    TransactionDirection,
    TransactionRecord,
    TransactionStatus,
    TransactionStatusEvent,
    TransactionType,
)
from payauth.services import ledger_service, session_service

logger = logging.getLogger(__name__)


async def get_account(db: AsyncSession, account_id: uuid.UUID) -> Account:
    """
    Raises:
        AccountNotFoundError: If the account doesn't exist.
    """
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError(account_id)
    return account


async def add_money(
    db: AsyncSession,
    account: Account,
    amount_minor: int,
    idempotency_key: str,
    description: str | None = None,
) -> TransactionRecord:
    """
    Credit the holder's own wallet without a verification ceremony.

    This is the single, explicit unauthenticated path into the ledger: a
    credit, of type add_money, to the caller's own account.
    """
    return await ledger_service.commit(
        db,
        account_id=account.id,
        amount_minor=amount_minor,
        direction=TransactionDirection.CREDIT,
        txn_type=TransactionType.ADD_MONEY,
        idempotency_key=idempotency_key,
        description=description or "Wallet top-up",
        allow_unauthenticated=True,
    )


async def verify_balance(db: AsyncSession, account: Account) -> dict:
    """
    Compare the cached balance with one recomputed from completed records.

    Returns:
        Dict with cached_balance_minor, computed_balance_minor, is_consistent.
    """
    signed_amount = case(
        (TransactionRecord.direction == TransactionDirection.CREDIT.value, TransactionRecord.amount_minor),
        else_=-TransactionRecord.amount_minor,
    )
    result = await db.execute(
        select(func.coalesce(func.sum(signed_amount), 0)).where(
            TransactionRecord.account_id == account.id,
            TransactionRecord.status == TransactionStatus.COMPLETED.value,
        )
    )
    computed = result.scalar_one()
    return {
        "account_id": account.id,
        "cached_balance_minor": account.balance_minor,
        "computed_balance_minor": computed,
        "is_consistent": account.balance_minor == computed,
    }


async def delete_account(db: AsyncSession, account: Account, password: str) -> None:
    """
    Permanently delete an account and everything it owns.

    Raises:
        InvalidCredentialsError: If the password is wrong.
    """
    if not await session_service.check_password(db, account, password):
        raise InvalidCredentialsError("Incorrect password")

    account_id = account.id
    owned_records = select(TransactionRecord.id).where(TransactionRecord.account_id == account_id)
    await db.execute(
        delete(TransactionStatusEvent)
        .where(TransactionStatusEvent.transaction_id.in_(owned_records))
    )
    await db.execute(
        delete(TransactionRecord)
        .where(TransactionRecord.account_id == account_id)
    )
    await db.execute(
        delete(Credential)
        .where(Credential.account_id == account_id)
    )
    await db.execute(
        delete(AuthSession)
        .where(AuthSession.account_id == account_id)
    )
    await db.delete(account)
    await db.flush()

    registry.discard_account(account_id)
    logger.info("Deleted account %s and its credentials, sessions and transactions", account_id)
