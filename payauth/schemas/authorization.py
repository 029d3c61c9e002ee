"""
Pydantic schemas for authorization attempts.

An attempt is the in-memory state machine that gates one payment. Its
responses expose the state, the offered methods and the outcome. Internal
values stay out: verifier scores are never serialized, and the device-key
challenge is only returned by the call that issues it (select, or a retry
of device_key).
"""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from payauth.attempts import AttemptState, AuthorizationAttempt
from payauth.models.credential import AuthMethod
from payauth.schemas.transaction import TransactionResponse


class AuthorizationRequest(BaseModel):
    """Request body for POST /authorizations (requestAuthorization)."""
    amount_minor: int = Field(gt=0, le=10_000_000, description="Amount in minor units")
    type: Literal["payment", "transfer", "recharge", "bill_payment"] = "payment"
    description: str | None = Field(None, max_length=255)
    counterparty_account_id: uuid.UUID | None = Field(
        None, description="Recipient account (transfers only)"
    )


class SelectMethodRequest(BaseModel):
    method: AuthMethod


class ProofRequest(BaseModel):
    """
    Request body for POST /authorizations/{id}/proof.

    `proof` is method specific; {"cancelled": true} reports that the holder
    declined the capture.
    """
    method: AuthMethod
    proof: dict[str, Any]


class RetryRequest(BaseModel):
    method: AuthMethod | None = Field(
        None, description="Switch to another offered method; omit to retry the same one"
    )


class AttemptResponse(BaseModel):
    id: uuid.UUID
    state: str
    amount_minor: int
    type: str
    description: str | None
    candidates: list[AuthMethod]
    method: AuthMethod | None
    assurance: str | None
    failure_reason: str | None
    proofs_remaining: int
    deadline: datetime | None
    transaction_id: uuid.UUID | None
    payment_error: str | None
    created_at: datetime

    @classmethod
    def from_attempt(cls, attempt: AuthorizationAttempt, **extra):
        return cls(
            id=attempt.id,
            state=attempt.state.value,
            amount_minor=attempt.amount_minor,
            type=attempt.txn_type.value,
            description=attempt.description,
            candidates=attempt.candidates,
            method=attempt.method,
            assurance=attempt.assurance.value if attempt.assurance else None,
            failure_reason=attempt.failure_reason,
            proofs_remaining=attempt.proofs_remaining,
            deadline=attempt.deadline if attempt.state == AttemptState.VERIFYING else None,
            transaction_id=attempt.transaction_id,
            payment_error=attempt.payment_error,
            created_at=attempt.created_at,
            **extra,
        )


class CeremonyResponse(AttemptResponse):
    """Returned when verification starts; carries the challenge for device_key."""
    challenge: str | None = None
    rp_id: str | None = None
    timeout_seconds: int | None = None


class ProofResponse(AttemptResponse):
    """Returned by submitProof; includes the committed transaction on success."""
    transaction: TransactionResponse | None = None
