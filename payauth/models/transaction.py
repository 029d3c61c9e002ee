"""
TransactionRecord model: the immutable audit entry for every balance change.

Every movement of money creates exactly one TransactionRecord per affected
account. A peer transfer creates two (a debit for the sender and a credit for
the recipient) linked by `transfer_group_id`.

Key fields:
  - direction: "credit" or "debit"; amount_minor is always positive
  - idempotency_key: caller-supplied, unique per account. The coordinator uses
    the authorization attempt id, so a replayed proof cannot pay twice.
  - auth_method / auth_assurance: which proof authorized this record and how
    strong it was ("unauthenticated" only for self top-ups)
  - balance_before / balance_after: snapshot at commit time, never recomputed

Status lifecycle:
    pending ──> processing ──> completed
        │            │
        └────────────┴──────> failed | cancelled

  Once a record reaches a terminal status (completed, failed, cancelled) its
  status, amount and balance snapshot are frozen. A mapper hook at the bottom
  of this module refuses any flush that would change them.

Status history:
  Each transition is a row in `transaction_status_events`. Settlement with
  the downstream gateway happens after the record is completed, so its
  outcome is appended as a "settled" or "settlement_failed" event and tracked
  in `settlement_status` without touching `status`.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    String, Integer, DateTime, ForeignKey, CheckConstraint, UniqueConstraint, event, inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payauth.database import Base
from payauth.exceptions import TransactionFinalizedError


class TransactionType(str, enum.Enum):
    PAYMENT = "payment"
    TRANSFER = "transfer"
    RECHARGE = "recharge"
    BILL_PAYMENT = "bill_payment"
    ADD_MONEY = "add_money"
    REFUND = "refund"


class TransactionDirection(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED.value,
    TransactionStatus.FAILED.value,
    TransactionStatus.CANCELLED.value,
})

# History entries written after completion by the settlement step
SETTLEMENT_EVENTS = frozenset({"settled", "settlement_failed"})


class TransactionRecord(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_transactions_positive_amount"),
        UniqueConstraint("account_id", "idempotency_key", name="uq_transactions_idempotency"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Human-facing reference shown on receipts, e.g. "TXN3F9K2A7Q1B"
    reference: Mapped[str] = mapped_column(
        String(32),
        unique=True,
        nullable=False,
    )

    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    idempotency_key: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
    )

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)

    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TransactionStatus.PENDING.value,
    )

    # "device_key", "face", "voice", "fingerprint", "pin" or "unauthenticated"
    auth_method: Mapped[str] = mapped_column(String(20), nullable=False)
    auth_assurance: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Credential that produced the proof (NULL for PIN and top-ups)
    credential_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    # Other side of a peer transfer
    counterparty_account_id: Mapped[uuid.UUID | None] = mapped_column(
        nullable=True,
        index=True,
    )
    transfer_group_id: Mapped[uuid.UUID | None] = mapped_column(
        nullable=True,
        index=True,
    )

    description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    balance_before: Mapped[int | None] = mapped_column(Integer, nullable=True)
    balance_after: Mapped[int | None] = mapped_column(Integer, nullable=True)

    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # NULL until a settlement is attempted; "settled" or "settlement_failed"
    settlement_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    status_history: Mapped[list["TransactionStatusEvent"]] = relationship(
        back_populates="transaction",
        order_by="TransactionStatusEvent.sequence",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TransactionStatusEvent(Base):
    __tablename__ = "transaction_status_events"

    __table_args__ = (
        UniqueConstraint("transaction_id", "sequence", name="uq_status_events_sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # 0-based position in the record's history
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    transaction: Mapped[TransactionRecord] = relationship(
        back_populates="status_history",
    )


# Columns that may never change once the record is terminal
_FROZEN_ATTRIBUTES = (
    "status", "amount_minor", "direction", "balance_before", "balance_after", "account_id",
)


@event.listens_for(TransactionRecord, "before_update")
def _refuse_changes_to_terminal_records(mapper, connection, target: TransactionRecord) -> None:
    state = inspect(target)
    status_history = state.attrs.status.history
    previous_status = status_history.deleted[0] if status_history.deleted else target.status
    if previous_status not in TERMINAL_STATUSES:
        return
    for name in _FROZEN_ATTRIBUTES:
        if state.attrs[name].history.has_changes():
            raise TransactionFinalizedError(
                f"Transaction {target.reference} is {previous_status}; '{name}' cannot change"
            )
