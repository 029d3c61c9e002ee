"""
Credential model: one enrolled proof-of-identity method for an account.

Types:
  - DEVICE_KEY:  public key bound to a platform authenticator (passkey,
                 Touch ID, Android biometric prompt). The private key never
                 leaves the device; verification is a signed challenge.
  - FACE:        fixed-length face embedding produced client side.
  - VOICE:       speaker embedding from a short recording. Low assurance.
  - FINGERPRINT: legacy opaque template from the old demo flow. Low assurance.

The numeric transaction PIN is not a Credential row; it lives on the Account
as `hashed_pin`.

Template storage:
  `template_encrypted` holds the type-specific template as Fernet-encrypted
  JSON. `external_id` holds the authenticator's credential identifier for
  DEVICE_KEY so assertions can be matched to a row without decrypting.

One active credential per type:
  A partial unique index over (account_id, type) WHERE is_active makes the
  database reject a second active enrollment even when two registrations
  race. Inactive rows are not constrained, so a disabled credential can be
  kept while a replacement is enrolled.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    String, Boolean, Integer, DateTime, Enum, ForeignKey, Index, LargeBinary, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from payauth.database import Base


class CredentialType(str, enum.Enum):
    DEVICE_KEY = "device_key"
    FACE = "face"
    VOICE = "voice"
    FINGERPRINT = "fingerprint"


class AuthMethod(str, enum.Enum):
    """Every proof the verifier set can check, including the account secrets."""
    DEVICE_KEY = "device_key"
    FACE = "face"
    VOICE = "voice"
    FINGERPRINT = "fingerprint"
    PIN = "pin"
    PASSWORD = "password"


class AssuranceLevel(str, enum.Enum):
    """
    How much a successful proof is worth to downstream risk decisions.

    HIGH:      hardware-backed signature (device key)
    MEDIUM:    face similarity
    KNOWLEDGE: something the holder knows (PIN, password)
    LOW:       voice and legacy fingerprint fallbacks
    """
    HIGH = "high"
    MEDIUM = "medium"
    KNOWLEDGE = "knowledge"
    LOW = "low"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Credential(Base):
    __tablename__ = "credentials"

    __table_args__ = (
        Index(
            "uq_credentials_one_active_per_type",
            "account_id",
            "type",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    type: Mapped[CredentialType] = mapped_column(
        Enum(CredentialType, native_enum=False, values_callable=_enum_values, length=20),
        nullable=False,
    )

    # Fernet-encrypted JSON, shape depends on type (see verifiers/)
    template_encrypted: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
    )

    # Authenticator credential id (base64url) for DEVICE_KEY, NULL otherwise
    external_id: Mapped[str | None] = mapped_column(
        String(512),
        nullable=True,
        index=True,
    )

    # Authenticator signature counter, used to spot cloned authenticators
    sign_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    label: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    # Only updated on a successful verification that used this credential
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
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
        nullable=False,
    )
