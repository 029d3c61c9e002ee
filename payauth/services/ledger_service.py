"""
Transaction ledger: the only code that changes an account balance.

THIS IS THE MOST CRITICAL FILE IN THE PROJECT. Every balance change and its
TransactionRecord are written in the SAME database transaction, so either
both land or neither does.

Commit sequence:
  1. Idempotency: if (account_id, idempotency_key) already has a record,
     return it unchanged. Nothing is applied twice.
  2. Authorization: a succeeded AuthorizationDecision for the same account
     and amount is required. The single exception is an explicit,
     unauthenticated add_money credit (self top-up).
  3. Insert the record as "pending". The unique constraint on
     (account_id, idempotency_key) claims the key before any money moves;
     a concurrent commit with the same key loses here and gets the winner's
     record back.
  4. Apply the balance change with ONE conditional statement:

        UPDATE accounts
           SET balance_minor = balance_minor - :amount
         WHERE id = :account_id AND balance_minor >= :amount
        RETURNING balance_minor

     The check and the write are a single statement, so two concurrent
     debits can never both see the pre-debit balance. Zero rows back means
     insufficient funds: the record is marked "failed" for the audit trail,
     the balance is untouched, and InsufficientBalanceError is raised.
     (get_db commits on domain errors, so the failed record persists.)
  5. Snapshot balance_before / balance_after and mark "completed".

Transfers add a credit leg on the counterparty in the same DB transaction,
linked to the debit by transfer_group_id.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.util import identity_key
from sqlalchemy.orm.attributes import set_committed_value

from payauth.attempts import AuthorizationDecision
from payauth.config import settings
from payauth.exceptions import (
    AccountNotFoundError,
    AuthorizationRequiredError,
    InsufficientBalanceError,
    InvalidPaymentRequestError,
    MethodNotPermittedError,
    TransactionFinalizedError,
    TransactionNotFoundError,
)
from payauth.models.account import Account
from payauth.models.credential import AssuranceLevel
from payauth.models.transaction import (
    SETTLEMENT_EVENTS,
    TransactionDirection,
    TransactionRecord,
    TransactionStatus,
    TransactionStatusEvent,
    TransactionType,
)
from payauth.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

UNAUTHENTICATED = "unauthenticated"


def _generate_reference() -> str:
    """Receipt reference, e.g. "TXN3F9A27C1B0"."""
    return "TXN" + secrets.token_hex(5).upper()


def _append_history(record: TransactionRecord, status: str, reason: str | None = None) -> None:
    record.status_history.append(
        TransactionStatusEvent(
            sequence=len(record.status_history),
            status=status,
            reason=reason,
            created_at=utcnow(),
        )
    )


def _sync_cached_balance(db: AsyncSession, account_id: uuid.UUID, balance: int) -> None:
    """Keep an already-loaded Account in step with a statement-level balance write."""
    cached = db.identity_map.get(identity_key(Account, account_id))
    if cached is not None:
        set_committed_value(cached, "balance_minor", balance)


async def find_by_idempotency_key(
    db: AsyncSession,
    account_id: uuid.UUID,
    idempotency_key: str,
) -> TransactionRecord | None:
    result = await db.execute(
        select(TransactionRecord).where(
            TransactionRecord.account_id == account_id,
            TransactionRecord.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


def check_authorization(
    decision: AuthorizationDecision | None,
    *,
    account_id: uuid.UUID,
    amount_minor: int,
    direction: TransactionDirection,
    txn_type: TransactionType,
    allow_unauthenticated: bool,
) -> None:
    """
    Refuse a commit that is not backed by a matching, strong enough decision.

    Raises:
        AuthorizationRequiredError: No decision (outside the top-up exception),
            or the decision covers a different account or amount.
        MethodNotPermittedError: A low-assurance method above its ceiling.
    """
    if decision is None:
        if (
            allow_unauthenticated
            and txn_type == TransactionType.ADD_MONEY
            and direction == TransactionDirection.CREDIT
        ):
            return
        raise AuthorizationRequiredError(
            "A succeeded authorization is required for this transaction"
        )

    if decision.account_id != account_id or decision.amount_minor != amount_minor:
        raise AuthorizationRequiredError("Authorization does not cover this transaction")

    if (
        decision.assurance == AssuranceLevel.LOW
        and amount_minor > settings.LOW_ASSURANCE_MAX_AMOUNT_MINOR
    ):
        raise MethodNotPermittedError(
            f"{decision.method.value} cannot authorize more than "
            f"{settings.LOW_ASSURANCE_MAX_AMOUNT_MINOR} minor units"
        )


async def _debit_balance(db: AsyncSession, account_id: uuid.UUID, amount_minor: int) -> int | None:
    """Conditional debit. Returns the new balance, or None if funds are short."""
    result = await db.execute(
        update(Account)
        .where(Account.id == account_id, Account.balance_minor >= amount_minor)
        .values(balance_minor=Account.balance_minor - amount_minor)
        .returning(Account.balance_minor)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is not None:
        _sync_cached_balance(db, account_id, new_balance)
    return new_balance


async def _credit_balance(db: AsyncSession, account_id: uuid.UUID, amount_minor: int) -> int | None:
    """Atomic credit. Returns the new balance, or None if the account is gone."""
    result = await db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance_minor=Account.balance_minor + amount_minor)
        .returning(Account.balance_minor)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is not None:
        _sync_cached_balance(db, account_id, new_balance)
    return new_balance


async def _current_balance(db: AsyncSession, account_id: uuid.UUID) -> int:
    result = await db.execute(select(Account.balance_minor).where(Account.id == account_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise AccountNotFoundError(account_id)
    return balance


def _complete(record: TransactionRecord, balance_before: int, balance_after: int) -> None:
    record.balance_before = balance_before
    record.balance_after = balance_after
    record.status = TransactionStatus.COMPLETED.value
    record.completed_at = utcnow()
    _append_history(record, TransactionStatus.COMPLETED.value)


async def commit(
    db: AsyncSession,
    *,
    account_id: uuid.UUID,
    amount_minor: int,
    direction: TransactionDirection,
    txn_type: TransactionType,
    idempotency_key: str,
    description: str | None = None,
    decision: AuthorizationDecision | None = None,
    allow_unauthenticated: bool = False,
    counterparty_account_id: uuid.UUID | None = None,
) -> TransactionRecord:
    """
    Apply one balance change and write its TransactionRecord, exactly once.

    Args:
        db: Database session. The caller's transaction commits both halves.
        account_id: The account whose balance changes.
        amount_minor: Positive amount in minor units.
        direction: CREDIT or DEBIT.
        txn_type: payment, transfer, recharge, bill_payment, add_money or refund.
        idempotency_key: Caller-supplied key, unique per account. The
            coordinator passes the authorization attempt id.
        description: Optional memo shown on the receipt.
        decision: The succeeded authorization backing this commit.
        allow_unauthenticated: Permit a decision-less add_money credit.
        counterparty_account_id: Recipient of a transfer.

    Returns:
        The new (or, on replay, the original) TransactionRecord.

    Raises:
        AuthorizationRequiredError: Missing or mismatched authorization.
        MethodNotPermittedError: Low-assurance method above its ceiling.
        InsufficientBalanceError: Debit larger than the current balance.
            A failed record is written before raising.
        AccountNotFoundError: The account or transfer counterparty is missing.
        InvalidPaymentRequestError: Malformed instruction (e.g. a transfer
            without a counterparty, or to the same account).
    """
    existing = await find_by_idempotency_key(db, account_id, idempotency_key)
    if existing is not None:
        logger.info("Idempotent replay of %s for account %s", existing.reference, account_id)
        return existing

    if amount_minor <= 0:
        raise InvalidPaymentRequestError("Amount must be positive")

    check_authorization(
        decision,
        account_id=account_id,
        amount_minor=amount_minor,
        direction=direction,
        txn_type=txn_type,
        allow_unauthenticated=allow_unauthenticated,
    )

    is_transfer = txn_type == TransactionType.TRANSFER
    if is_transfer:
        if counterparty_account_id is None or direction != TransactionDirection.DEBIT:
            raise InvalidPaymentRequestError("A transfer is a debit with a counterparty")
        if counterparty_account_id == account_id:
            raise InvalidPaymentRequestError("Cannot transfer to the same account")
        await _current_balance(db, counterparty_account_id)

    record = TransactionRecord(
        reference=_generate_reference(),
        account_id=account_id,
        idempotency_key=idempotency_key,
        type=txn_type.value,
        direction=direction.value,
        amount_minor=amount_minor,
        status=TransactionStatus.PENDING.value,
        auth_method=decision.method.value if decision else UNAUTHENTICATED,
        auth_assurance=decision.assurance.value if decision else None,
        credential_id=decision.credential_id if decision else None,
        counterparty_account_id=counterparty_account_id,
        transfer_group_id=uuid.uuid4() if is_transfer else None,
        description=description,
        created_at=utcnow(),
    )
    _append_history(record, TransactionStatus.PENDING.value)
    db.add(record)
    try:
        await db.flush()
    except IntegrityError:
        # Another commit claimed this key first; hand back its record
        await db.rollback()
        winner = await find_by_idempotency_key(db, account_id, idempotency_key)
        if winner is None:
            raise
        logger.info("Idempotency key collision resolved to %s", winner.reference)
        return winner

    if direction == TransactionDirection.DEBIT:
        balance_after = await _debit_balance(db, account_id, amount_minor)
        if balance_after is None:
            available = await _current_balance(db, account_id)
            record.balance_before = available
            record.balance_after = available
            record.status = TransactionStatus.FAILED.value
            record.failure_reason = "insufficient_balance"
            record.completed_at = utcnow()
            _append_history(record, TransactionStatus.FAILED.value, "insufficient_balance")
            await db.flush()
            logger.warning(
                "Declined %s: requested %d, available %d",
                record.reference, amount_minor, available,
            )
            raise InsufficientBalanceError(
                account_id=account_id,
                requested_minor=amount_minor,
                available_minor=available,
                transaction_id=record.id,
            )
        _complete(record, balance_after + amount_minor, balance_after)
    else:
        balance_after = await _credit_balance(db, account_id, amount_minor)
        if balance_after is None:
            await db.rollback()
            raise AccountNotFoundError(account_id)
        _complete(record, balance_after - amount_minor, balance_after)

    if is_transfer:
        await _credit_transfer_leg(db, record, decision)

    await db.flush()
    logger.info(
        "Committed %s: %s %s %d on account %s via %s",
        record.reference, record.type, record.direction, amount_minor,
        account_id, record.auth_method,
    )
    return record


async def _credit_transfer_leg(
    db: AsyncSession,
    debit: TransactionRecord,
    decision: AuthorizationDecision,
) -> TransactionRecord:
    recipient_id = debit.counterparty_account_id
    balance_after = await _credit_balance(db, recipient_id, debit.amount_minor)
    if balance_after is None:
        # Recipient vanished after the check; undo the debit leg as well
        await db.rollback()
        raise AccountNotFoundError(recipient_id)

    credit = TransactionRecord(
        reference=_generate_reference(),
        account_id=recipient_id,
        idempotency_key=f"{debit.idempotency_key}:credit",
        type=TransactionType.TRANSFER.value,
        direction=TransactionDirection.CREDIT.value,
        amount_minor=debit.amount_minor,
        status=TransactionStatus.PENDING.value,
        auth_method=decision.method.value,
        auth_assurance=decision.assurance.value,
        counterparty_account_id=debit.account_id,
        transfer_group_id=debit.transfer_group_id,
        description=debit.description,
        created_at=utcnow(),
    )
    _append_history(credit, TransactionStatus.PENDING.value)
    _complete(credit, balance_after - debit.amount_minor, balance_after)
    db.add(credit)
    return credit


async def append_status(
    db: AsyncSession,
    record: TransactionRecord,
    status: str,
    reason: str | None = None,
) -> TransactionRecord:
    """
    Append a status-history entry.

    Lifecycle statuses move `status`. Settlement outcomes ("settled",
    "settlement_failed") are appended after completion without touching it.

    Raises:
        TransactionFinalizedError: A lifecycle change on a terminal record.
    """
    if status in SETTLEMENT_EVENTS:
        _append_history(record, status, reason)
    else:
        if record.is_terminal:
            raise TransactionFinalizedError(
                f"Transaction {record.reference} is already {record.status}"
            )
        record.status = TransactionStatus(status).value
        if record.is_terminal:
            record.completed_at = utcnow()
        _append_history(record, status, reason)
    await db.flush()
    return record


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

async def list_transactions(
    db: AsyncSession,
    account_id: uuid.UUID,
    type_filter: str | None = None,
    status_filter: str | None = None,
    direction_filter: str | None = None,
    search: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    min_amount_minor: int | None = None,
    max_amount_minor: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[TransactionRecord]:
    """
    List an account's transactions, newest first.

    Args:
        db: Database session.
        account_id: The authenticated account.
        type_filter: Optional type ("payment", "transfer", ...).
        status_filter: Optional status ("completed", "failed", ...).
        direction_filter: Optional "credit" or "debit".
        search: Case-insensitive text matched against description and reference.
        created_from: Inclusive lower bound on created_at.
        created_to: Inclusive upper bound on created_at.
        min_amount_minor: Inclusive lower bound on the amount.
        max_amount_minor: Inclusive upper bound on the amount.
        limit: Max number of results (default 50).
        offset: Number of results to skip (for pagination).
    """
    query = (
        select(TransactionRecord)
        .where(TransactionRecord.account_id == account_id)
        .order_by(TransactionRecord.created_at.desc(), TransactionRecord.reference)
        .limit(limit)
        .offset(offset)
    )
    if type_filter:
        query = query.where(TransactionRecord.type == type_filter)
    if status_filter:
        query = query.where(TransactionRecord.status == status_filter)
    if direction_filter:
        query = query.where(TransactionRecord.direction == direction_filter)
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(
            TransactionRecord.description.ilike(pattern),
            TransactionRecord.reference.ilike(pattern),
        ))
    if created_from is not None:
        query = query.where(TransactionRecord.created_at >= ensure_utc(created_from))
    if created_to is not None:
        query = query.where(TransactionRecord.created_at <= ensure_utc(created_to))
    if min_amount_minor is not None:
        query = query.where(TransactionRecord.amount_minor >= min_amount_minor)
    if max_amount_minor is not None:
        query = query.where(TransactionRecord.amount_minor <= max_amount_minor)

    result = await db.execute(query)
    return list(result.scalars().all())


async def get_transaction(
    db: AsyncSession,
    account_id: uuid.UUID,
    transaction_id: uuid.UUID,
) -> TransactionRecord:
    """
    Raises:
        TransactionNotFoundError: If it doesn't exist or belongs to another account.
    """
    result = await db.execute(
        select(TransactionRecord).where(
            TransactionRecord.id == transaction_id,
            TransactionRecord.account_id == account_id,
        )
    )
    record = result.scalar_one_or_none()
    if record is None:
        raise TransactionNotFoundError(transaction_id)
    return record


# ---------------------------------------------------------------------------
# Period statistics
# ---------------------------------------------------------------------------

STATS_PERIODS = ("day", "week", "month", "year")


@dataclass
class GroupTotal:
    count: int
    amount_minor: int


@dataclass
class TransactionStats:
    period: str
    start: datetime
    total_transactions: int
    total_spent_minor: int
    total_received_minor: int
    by_type: dict[str, GroupTotal] = field(default_factory=dict)
    by_auth_method: dict[str, GroupTotal] = field(default_factory=dict)


def period_start(period: str, now: datetime | None = None) -> datetime:
    """
    Start of a reporting period in UTC.

    "day", "month" and "year" are calendar periods; "week" is the last seven
    days.
    """
    now = now or utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "day":
        return midnight
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return midnight.replace(day=1)
    if period == "year":
        return midnight.replace(month=1, day=1)
    raise ValueError(f"Unknown period {period!r}")


async def _grouped_totals(db: AsyncSession, column, conditions) -> dict[str, GroupTotal]:
    result = await db.execute(
        select(column, func.count(), func.sum(TransactionRecord.amount_minor))
        .where(*conditions)
        .group_by(column)
    )
    return {key: GroupTotal(count=count, amount_minor=amount) for key, count, amount in result.all()}


async def transaction_stats(
    db: AsyncSession,
    account_id: uuid.UUID,
    period: str = "month",
    now: datetime | None = None,
) -> TransactionStats:
    """
    Totals for the account since the start of `period`.

    Every record in the period is counted in total_transactions. Amounts and
    the per-type and per-method breakdowns include completed records only:
    spent is the sum of completed debits, received of completed credits.
    """
    start = period_start(period, now)
    in_period = (
        TransactionRecord.account_id == account_id,
        TransactionRecord.created_at >= start,
    )
    completed = (*in_period, TransactionRecord.status == TransactionStatus.COMPLETED.value)

    total = await db.scalar(
        select(func.count()).select_from(TransactionRecord).where(*in_period)
    )
    by_direction = await _grouped_totals(db, TransactionRecord.direction, completed)
    spent = by_direction.get(TransactionDirection.DEBIT.value)
    received = by_direction.get(TransactionDirection.CREDIT.value)

    return TransactionStats(
        period=period,
        start=start,
        total_transactions=total or 0,
        total_spent_minor=spent.amount_minor if spent else 0,
        total_received_minor=received.amount_minor if received else 0,
        by_type=await _grouped_totals(db, TransactionRecord.type, completed),
        by_auth_method=await _grouped_totals(db, TransactionRecord.auth_method, completed),
    )
