"""
Authorization coordinator: drives an AuthorizationAttempt from request to
ledger commit.

requestAuthorization:
  Builds the candidate methods for the account, in preference order:

      device_key > face > voice > fingerprint

  filtered to ACTIVE credentials. Low-assurance methods (voice, legacy
  fingerprint) are left out when the amount is above
  LOW_ASSURANCE_MAX_AMOUNT_MINOR. If nothing is left, the transaction PIN is
  the candidate when one is set; otherwise the attempt fails at once with
  "no_authorization_method_available" and the client should send the holder
  to enrollment. Candidates are offered as a choice, not tried silently in
  sequence.

submitProof:
  Runs the chosen verifier and moves the attempt. On success the ledger
  commits with idempotency key = attempt id, so a replayed proof can never
  debit twice. A verifier that raises (storage unavailable) fails the attempt
  with "unavailable" and the error propagates; it can never resolve to
  succeeded. The same holds when the ledger write itself fails: the success
  is unwound and the holder may retry.
"""

import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from payauth.attempts import (
    UNAVAILABLE,
    AttemptState,
    AuthorizationAttempt,
    registry,
)
from payauth.config import settings
from payauth.exceptions import (
    InsufficientBalanceError,
    InvalidAttemptTransitionError,
    InvalidPaymentRequestError,
    PayAuthError,
)
from payauth.models.account import Account
from payauth.models.credential import AuthMethod, CredentialType
from payauth.models.transaction import TransactionDirection, TransactionRecord, TransactionType
from payauth.security import generate_challenge
from payauth.services import account_service, credential_service, ledger_service
from payauth.verifiers import VERIFIERS, VerificationContext

logger = logging.getLogger(__name__)

# Strongest first
METHOD_PREFERENCE = (
    AuthMethod.DEVICE_KEY,
    AuthMethod.FACE,
    AuthMethod.VOICE,
    AuthMethod.FINGERPRINT,
)


async def build_candidates(
    db: AsyncSession,
    account: Account,
    amount_minor: int,
) -> list[AuthMethod]:
    active = await credential_service.active_types(db, account.id)
    candidates = [
        method for method in METHOD_PREFERENCE if CredentialType(method.value) in active
    ]
    if amount_minor > settings.LOW_ASSURANCE_MAX_AMOUNT_MINOR:
        candidates = [m for m in candidates if not VERIFIERS[m].is_low_assurance]
    if not candidates and account.has_pin:
        candidates = [AuthMethod.PIN]
    return candidates


async def request_authorization(
    db: AsyncSession,
    account: Account,
    amount_minor: int,
    txn_type: TransactionType,
    description: str | None = None,
    counterparty_account_id: uuid.UUID | None = None,
) -> AuthorizationAttempt:
    """
    Start an authorization attempt for one payment action.

    Args:
        db: Database session.
        account: The paying account (from the session gate).
        amount_minor: Positive amount in minor units.
        txn_type: payment, transfer, recharge or bill_payment.
        description: Memo carried to the transaction record.
        counterparty_account_id: Recipient, required for transfers.

    Returns:
        The attempt, in method_selection or (nothing usable) failed.

    Raises:
        InvalidPaymentRequestError: Transfer without a recipient, or to self.
        AccountNotFoundError: The recipient does not exist.
    """
    if txn_type == TransactionType.TRANSFER:
        if counterparty_account_id is None:
            raise InvalidPaymentRequestError("A transfer needs a recipient")
        if counterparty_account_id == account.id:
            raise InvalidPaymentRequestError("Cannot transfer to your own account")
        await account_service.get_account(db, counterparty_account_id)
    elif counterparty_account_id is not None:
        raise InvalidPaymentRequestError("Only transfers have a recipient")

    attempt = AuthorizationAttempt(
        account_id=account.id,
        amount_minor=amount_minor,
        txn_type=txn_type,
        description=description,
        counterparty_account_id=counterparty_account_id,
    )
    attempt.offer(await build_candidates(db, account, amount_minor))
    registry.add(attempt)
    return attempt


def _challenge_for(method: AuthMethod) -> str | None:
    return generate_challenge() if method == AuthMethod.DEVICE_KEY else None


def select_method(attempt: AuthorizationAttempt, method: AuthMethod) -> AuthorizationAttempt:
    """
    method_selection -> verifying. Issues a fresh challenge for device_key.
    """
    verifier = VERIFIERS[method]
    attempt.select(method, verifier.capture_seconds, _challenge_for(method))
    return attempt


def retry(attempt: AuthorizationAttempt, method: AuthMethod | None = None) -> AuthorizationAttempt:
    """
    Re-enter verification after a failure.

    With no method (or the same one) the attempt goes back to verifying with
    the method that failed. A different method switches: the attempt passes
    through method_selection and the new method is selected.
    """
    if method is None or method == attempt.method:
        current = attempt.method
        attempt.retry(
            VERIFIERS[current].capture_seconds if current else 0,
            _challenge_for(current) if current else None,
        )
        return attempt
    attempt.reselect()
    return select_method(attempt, method)


def reselect(attempt: AuthorizationAttempt) -> AuthorizationAttempt:
    attempt.reselect()
    return attempt


def cancel_attempt(attempt: AuthorizationAttempt) -> AuthorizationAttempt:
    attempt.cancel()
    return attempt


async def submit_proof(
    db: AsyncSession,
    account: Account,
    attempt: AuthorizationAttempt,
    method: AuthMethod,
    proof: Any,
) -> tuple[AuthorizationAttempt, TransactionRecord | None]:
    """
    Verify a proof and, on success, commit the payment.

    From method_selection the method is selected implicitly, except
    device_key, whose assertion must sign a challenge issued by select.

    Returns:
        Tuple of (attempt, committed record or None).

    Raises:
        InvalidAttemptTransitionError: The attempt is not awaiting this proof.
        InsufficientBalanceError: Verified, but the debit was declined.
            The attempt stays succeeded and carries the failed record id.
    """
    if attempt.state == AttemptState.METHOD_SELECTION:
        if method == AuthMethod.DEVICE_KEY:
            raise InvalidAttemptTransitionError(
                attempt.state.value, "submit a device_key assertion without a challenge for"
            )
        select_method(attempt, method)
    elif attempt.state == AttemptState.VERIFYING:
        if method != attempt.method:
            raise InvalidAttemptTransitionError(
                attempt.state.value, f"submit a {method.value} proof to a {attempt.method.value}"
            )
    else:
        raise InvalidAttemptTransitionError(attempt.state.value, "submit a proof to")

    if attempt.expire_if_overdue():
        return attempt, None

    verifier = VERIFIERS[method]
    try:
        result = await verifier.verify(
            db, account, proof, VerificationContext(challenge=attempt.challenge)
        )
    except Exception:
        attempt.fail(UNAVAILABLE)
        logger.exception("Verifier %s failed for attempt %s", method.value, attempt.id)
        raise

    attempt.resolve(result)
    if result.score is not None:
        logger.debug("Attempt %s %s score %.4f", attempt.id, method.value, result.score)
    if attempt.state != AttemptState.SUCCEEDED:
        logger.warning("Attempt %s: %s verification %s", attempt.id, method.value, result.reason.value)
        return attempt, None

    record = await _commit_payment(db, attempt)
    return attempt, record


async def _commit_payment(db: AsyncSession, attempt: AuthorizationAttempt) -> TransactionRecord:
    try:
        record = await ledger_service.commit(
            db,
            account_id=attempt.account_id,
            amount_minor=attempt.amount_minor,
            direction=TransactionDirection.DEBIT,
            txn_type=attempt.txn_type,
            idempotency_key=str(attempt.id),
            description=attempt.description,
            decision=attempt.decision(),
            counterparty_account_id=attempt.counterparty_account_id,
        )
    except InsufficientBalanceError as exc:
        attempt.transaction_id = exc.transaction_id
        attempt.payment_error = exc.error_type
        raise
    except PayAuthError as exc:
        attempt.payment_error = exc.error_type
        raise
    except Exception:
        unwind_commit(attempt)
        raise

    attempt.transaction_id = record.id
    return record


def unwind_commit(attempt: AuthorizationAttempt) -> None:
    """
    Undo a success whose payment never reached the database.

    The request session rolls back, so no record exists for the attempt id.
    The attempt fails with "unavailable" and can be retried.
    """
    logger.exception("Ledger commit failed for attempt %s", attempt.id)
    attempt.unwind_success(UNAVAILABLE)
