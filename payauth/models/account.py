"""
Account model: identity plus monetary state.

Each account has:
  - A login email and an Argon2id password hash
  - An optional numeric transaction PIN, hashed the same way into its own column
  - A balance in integer minor units (paise for INR)

Balance management:
  `balance_minor` is written ONLY by the transaction ledger, and only through
  a single conditional UPDATE (see services/ledger_service.py). A CHECK
  constraint at the database level keeps the balance from going negative
  even if a bug slips past the ledger.

Why integer minor units?
  Floating point cannot represent most decimal fractions exactly. Storing
  ₹10.99 as 1099 keeps all arithmetic exact; the client divides by 100.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from payauth.database import Base


class Account(Base):
    __tablename__ = "accounts"

    __table_args__ = (
        CheckConstraint(
            "balance_minor >= 0",
            name="ck_accounts_non_negative_balance",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Login identifier, unique and indexed for lookups at login
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    display_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    phone: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )

    balance_minor: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # ISO 4217 currency code
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="INR",
    )

    hashed_password: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # NULL until the holder sets a transaction PIN
    hashed_pin: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    @property
    def has_pin(self) -> bool:
        return self.hashed_pin is not None
