"""
Authorizations router: the payment verification ceremony.

Endpoints:
  POST /authorizations                 Start an attempt for a payment action
  GET  /authorizations/{id}            Current state of an attempt
  POST /authorizations/{id}/select     Choose a method; starts the capture window
  POST /authorizations/{id}/proof      Submit a proof; commits the payment on success
  POST /authorizations/{id}/retry      Retry after a failure (same or another method)
  POST /authorizations/{id}/reselect   Back to method selection
  POST /authorizations/{id}/cancel     Abandon the attempt

A typical flow:

  1. POST /authorizations {"amount_minor": 45000, "type": "payment"}
     -> state "method_selection", candidates ["face", "pin", ...]
  2. POST /authorizations/{id}/select {"method": "face"}
     -> state "verifying", deadline set
  3. POST /authorizations/{id}/proof {"method": "face", "proof": {...}}
     -> state "succeeded" with the committed transaction, or "failed"
        with a reason and proofs_remaining

Attempts are visible only to the account that created them. A verification
failure is a normal 200 response with state "failed"; HTTP errors are kept
for illegal transitions, unknown attempts and ledger rejections. Starting
attempts is throttled per account (AUTHORIZATION_RATE_LIMIT per window).
"""

import logging
import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payauth.attempts import registry
from payauth.config import settings
from payauth.database import get_db, get_session_factory
from payauth.dependencies import get_current_account
from payauth.gateway import SettlementGateway, get_settlement_gateway
from payauth.models.account import Account
from payauth.models.credential import AuthMethod
from payauth.models.transaction import TransactionType
from payauth.rate_limit import authorization_limit
from payauth.schemas.authorization import (
    AttemptResponse,
    AuthorizationRequest,
    CeremonyResponse,
    ProofRequest,
    ProofResponse,
    RetryRequest,
    SelectMethodRequest,
)
from payauth.schemas.transaction import TransactionResponse
from payauth.services import authorization_service, settlement_service
from payauth.verifiers import VERIFIERS

logger = logging.getLogger(__name__)

router = APIRouter()


def _ceremony(attempt) -> CeremonyResponse:
    extra = {}
    if attempt.method == AuthMethod.DEVICE_KEY and attempt.challenge:
        extra = {
            "challenge": attempt.challenge,
            "rp_id": settings.RP_ID,
            "timeout_seconds": VERIFIERS[AuthMethod.DEVICE_KEY].capture_seconds,
        }
    return CeremonyResponse.from_attempt(attempt, **extra)


@router.post(
    "",
    response_model=AttemptResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(authorization_limit)],
    summary="Start an authorization attempt",
)
async def request_authorization(
    request: AuthorizationRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """
    Start verifying the holder for one payment action.

    - **amount_minor**: Positive integer in minor units
    - **type**: payment, transfer, recharge or bill_payment
    - **counterparty_account_id**: Required for transfers

    The response lists the methods the holder may use, strongest first. If
    none is enrolled and no PIN is set, the attempt is returned already
    failed with reason "no_authorization_method_available".
    """
    attempt = await authorization_service.request_authorization(
        db,
        account,
        amount_minor=request.amount_minor,
        txn_type=TransactionType(request.type),
        description=request.description,
        counterparty_account_id=request.counterparty_account_id,
    )
    return AttemptResponse.from_attempt(attempt)


@router.get(
    "/{attempt_id}",
    response_model=AttemptResponse,
    summary="Get an authorization attempt",
)
async def get_attempt(
    attempt_id: uuid.UUID,
    account: Account = Depends(get_current_account),
):
    """An attempt whose capture window has closed is reported as failed (timeout)."""
    return AttemptResponse.from_attempt(registry.get(attempt_id, account.id))


@router.post(
    "/{attempt_id}/select",
    response_model=CeremonyResponse,
    summary="Choose a verification method",
)
async def select_method(
    attempt_id: uuid.UUID,
    request: SelectMethodRequest,
    account: Account = Depends(get_current_account),
):
    """
    Move the attempt to verifying with one of its candidates.

    For device_key the response carries a single-use challenge that the
    authenticator must sign, with the relying party id and timeout.
    """
    attempt = registry.get(attempt_id, account.id)
    authorization_service.select_method(attempt, request.method)
    return _ceremony(attempt)


@router.post(
    "/{attempt_id}/proof",
    response_model=ProofResponse,
    summary="Submit a verification proof",
)
async def submit_proof(
    attempt_id: uuid.UUID,
    request: ProofRequest,
    background_tasks: BackgroundTasks,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateway: SettlementGateway = Depends(get_settlement_gateway),
):
    """
    Verify the proof and, when it matches, commit the payment.

    Proof shapes by method:
      - pin / password: {"pin": "1234"} / {"password": "..."}
      - device_key: WebAuthn assertion fields, base64url encoded
      - face: {"embedding": [128 floats]}
      - voice: {"embedding": "<base64 float32>"}
      - fingerprint: {"template": "<opaque string>"}
      - any method: {"cancelled": true} when the holder declines the capture

    A committed external debit is handed to the settlement gateway after
    the response is sent.
    """
    attempt = registry.get(attempt_id, account.id)
    attempt, record = await authorization_service.submit_proof(
        db, account, attempt, request.method, request.proof,
    )
    if record is None:
        return ProofResponse.from_attempt(attempt)

    # The background task reads the record through its own session
    try:
        await db.commit()
    except SQLAlchemyError:
        authorization_service.unwind_commit(attempt)
        raise
    if settlement_service.needs_settlement(record) and record.settlement_status is None:
        background_tasks.add_task(
            settlement_service.settle_in_background, session_factory, record.id, gateway,
        )
    return ProofResponse.from_attempt(
        attempt, transaction=TransactionResponse.model_validate(record),
    )


@router.post(
    "/{attempt_id}/retry",
    response_model=CeremonyResponse,
    summary="Retry a failed verification",
)
async def retry(
    attempt_id: uuid.UUID,
    request: RetryRequest,
    account: Account = Depends(get_current_account),
):
    """
    Go back to verifying after a failure.

    Omit `method` to retry the same one; name another candidate to switch.
    Refused once MAX_VERIFICATION_ATTEMPTS proofs have been checked.
    """
    attempt = registry.get(attempt_id, account.id)
    authorization_service.retry(attempt, request.method)
    return _ceremony(attempt)


@router.post(
    "/{attempt_id}/reselect",
    response_model=AttemptResponse,
    summary="Return to method selection",
)
async def reselect(
    attempt_id: uuid.UUID,
    account: Account = Depends(get_current_account),
):
    attempt = registry.get(attempt_id, account.id)
    return AttemptResponse.from_attempt(authorization_service.reselect(attempt))


@router.post(
    "/{attempt_id}/cancel",
    response_model=AttemptResponse,
    summary="Cancel an authorization attempt",
)
async def cancel(
    attempt_id: uuid.UUID,
    account: Account = Depends(get_current_account),
):
    """Abandon the attempt. Cancelling an already cancelled attempt is a no-op."""
    attempt = registry.get(attempt_id, account.id)
    return AttemptResponse.from_attempt(authorization_service.cancel_attempt(attempt))
