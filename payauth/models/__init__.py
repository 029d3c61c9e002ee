"""
SQLAlchemy ORM models package.

All models are imported here so that:
  1. Base.metadata knows every table when create_all() runs
  2. Other modules can import from payauth.models directly

The authorization attempt is not here: it is an in-memory state
machine (payauth/attempts.py) and is never persisted.
"""

from payauth.models.account import Account  # noqa: F401
from payauth.models.credential import (  # noqa: F401
    AssuranceLevel,
    AuthMethod,
    Credential,
    CredentialType,
)
from payauth.models.session import AuthSession  # noqa: F401
from payauth.models.transaction import (  # noqa: F401
    TransactionDirection,
    TransactionRecord,
    TransactionStatus,
    TransactionStatusEvent,
    TransactionType,
)
