"""
Settlement of committed debits with the downstream gateway.

Runs after the ledger commit, never inside it:

  - Only completed debits that leave the wallet (payment, recharge,
    bill_payment) are settled. Transfers stay internal.
  - The gateway is retried with exponential backoff
    (SETTLEMENT_BACKOFF_SECONDS * 2**n, up to SETTLEMENT_MAX_ATTEMPTS).
  - The outcome is appended to the record's status history as "settled" or
    "settlement_failed" and mirrored in settlement_status. `status` stays
    "completed" and the balance is never unwound; a failed settlement is
    reconciled out of band (POST /transactions/{id}/settlement).
  - Gateway error detail goes to the log, not to the history entry.
  - Before the gateway is called the record is claimed with one conditional
    UPDATE (settlement_status NULL or "settlement_failed" -> "settling").
    A concurrent settle of the same record blocks on that row until the
    claimant commits, then finds nothing to claim and makes no gateway call.
    "settling" never outlives the claiming transaction: settle always
    replaces it with the outcome, and a crash rolls it back.
"""

import asyncio
import logging
import uuid

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from payauth.config import settings
from payauth.exceptions import SettlementError, SettlementNotAllowedError
from payauth.gateway import SettlementGateway
from payauth.models.transaction import (
    TransactionDirection,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
)
from payauth.services import ledger_service

logger = logging.getLogger(__name__)

SETTLED = "settled"
SETTLEMENT_FAILED = "settlement_failed"
SETTLING = "settling"

_SETTLED_TYPES = frozenset({
    TransactionType.PAYMENT.value,
    TransactionType.RECHARGE.value,
    TransactionType.BILL_PAYMENT.value,
})


def needs_settlement(record: TransactionRecord) -> bool:
    return (
        record.status == TransactionStatus.COMPLETED.value
        and record.direction == TransactionDirection.DEBIT.value
        and record.type in _SETTLED_TYPES
    )


async def _claim(db: AsyncSession, record: TransactionRecord) -> bool:
    result = await db.execute(
        update(TransactionRecord)
        .where(
            TransactionRecord.id == record.id,
            or_(
                TransactionRecord.settlement_status.is_(None),
                TransactionRecord.settlement_status == SETTLEMENT_FAILED,
            ),
        )
        .values(settlement_status=SETTLING)
        .returning(TransactionRecord.id)
        .execution_options(synchronize_session=False)
    )
    if result.scalar_one_or_none() is None:
        return False
    set_committed_value(record, "settlement_status", SETTLING)
    return True


async def settle(
    db: AsyncSession,
    record: TransactionRecord,
    gateway: SettlementGateway,
    max_attempts: int | None = None,
    backoff_seconds: float | None = None,
) -> TransactionRecord:
    """
    Settle one record, retrying on gateway failure.

    Returns the record without calling the gateway if it is already settled
    or another settle holds it.

    Raises:
        SettlementNotAllowedError: If the record is not a completed external debit.
    """
    if not needs_settlement(record):
        raise SettlementNotAllowedError(
            f"Transaction {record.reference} is not a completed external debit"
        )
    if record.settlement_status == SETTLED:
        return record
    if not await _claim(db, record):
        await db.refresh(record)
        logger.info("Settlement of %s already handled elsewhere", record.reference)
        return record

    max_attempts = max_attempts or settings.SETTLEMENT_MAX_ATTEMPTS
    backoff_seconds = settings.SETTLEMENT_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    for attempt in range(max_attempts):
        try:
            gateway_reference = await gateway.settle(record)
        except SettlementError as exc:
            logger.warning(
                "Settlement attempt %d/%d for %s failed: %s",
                attempt + 1, max_attempts, record.reference, exc.detail,
            )
            if attempt < max_attempts - 1:
                await asyncio.sleep(backoff_seconds * (2 ** attempt))
            continue

        record.settlement_status = SETTLED
        await ledger_service.append_status(db, record, SETTLED, f"gateway reference {gateway_reference}")
        logger.info("Settled %s (%s)", record.reference, gateway_reference)
        return record

    record.settlement_status = SETTLEMENT_FAILED
    await ledger_service.append_status(
        db, record, SETTLEMENT_FAILED, f"gateway unavailable after {max_attempts} attempts",
    )
    logger.error("Settlement of %s failed; left for reconciliation", record.reference)
    return record


async def settle_in_background(
    session_factory: async_sessionmaker[AsyncSession],
    transaction_id: uuid.UUID,
    gateway: SettlementGateway,
) -> None:
    """
    BackgroundTask entry point: settle with a session of its own.

    The request session is closed by the time this runs. Failures are
    logged and left for reconciliation; nothing is raised to the client.
    """
    async with session_factory() as session:
        try:
            result = await session.execute(
                select(TransactionRecord).where(TransactionRecord.id == transaction_id)
            )
            record = result.scalar_one_or_none()
            if record is None or not needs_settlement(record):
                return
            await settle(session, record, gateway)
            await session.commit()
        except Exception:
            await session.rollback()
            logger.exception("Background settlement of %s crashed", transaction_id)
