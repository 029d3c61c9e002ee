"""
Authorization attempt: the verification state machine for one payment action.

States:

    idle ──> method_selection ──> verifying ──> succeeded
                  │   ▲              │
                  │   │              ├──> failed ────┐ retry (same method)
                  │   │              │      │        └──> verifying
                  │   └── reselect ──┤      │
                  │                  └──> cancelled
                  └──> failed (no_authorization_method_available)

  - succeeded is final once its ledger write lands. A new payment creates a
    new attempt. If the write fails for an infrastructure reason the success
    is unwound to failed ("unavailable") and the proof is not counted, so the
    holder can retry and the commit runs again under the same idempotency key.
  - failed offers retry: the same method again, or a switch to another
    candidate. Refused once MAX_VERIFICATION_ATTEMPTS proofs were checked.
  - cancelled is where a user-declined capture lands. Nothing restarts it
    automatically; the caller may reselect.
  - verifying carries a capture deadline. A proof that arrives after it (or
    a read of an overdue attempt) fails the attempt with reason "timeout".

Attempts are never persisted. They live in an in-process AttemptRegistry
for ATTEMPT_TTL_SECONDS so the client can drive them across requests; the
server holds no resource while a capture is in progress on the device.

This module has no database or HTTP code, so every transition can be tested
directly. payauth/services/authorization_service.py drives it.
"""

import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from payauth.config import settings
from payauth.exceptions import (
    AttemptNotFoundError,
    AuthorizationRequiredError,
    InvalidAttemptTransitionError,
    MethodNotPermittedError,
)
from payauth.models.credential import AssuranceLevel, AuthMethod
from payauth.models.transaction import TransactionType
from payauth.time_utils import utcnow
from payauth.verifiers import VerificationReason, VerificationResult

logger = logging.getLogger(__name__)


class AttemptState(str, enum.Enum):
    IDLE = "idle"
    METHOD_SELECTION = "method_selection"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Failure reasons that are not verifier outcomes
NO_METHOD_AVAILABLE = "no_authorization_method_available"
UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class AttemptEvent:
    state: AttemptState
    at: datetime
    reason: str | None = None


@dataclass(frozen=True)
class AuthorizationDecision:
    """What the ledger needs to know about a succeeded attempt."""
    attempt_id: uuid.UUID
    account_id: uuid.UUID
    amount_minor: int
    method: AuthMethod
    assurance: AssuranceLevel
    credential_id: uuid.UUID | None = None


@dataclass
class AuthorizationAttempt:
    account_id: uuid.UUID
    amount_minor: int
    txn_type: TransactionType
    description: str | None = None
    counterparty_account_id: uuid.UUID | None = None

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    state: AttemptState = AttemptState.IDLE
    candidates: list[AuthMethod] = field(default_factory=list)

    # Method being verified, or the one that succeeded
    method: AuthMethod | None = None
    assurance: AssuranceLevel | None = None
    credential_id: uuid.UUID | None = None
    failure_reason: str | None = None

    challenge: str | None = None
    deadline: datetime | None = None
    proofs_checked: int = 0

    # Set once the ledger has written a record for this attempt
    transaction_id: uuid.UUID | None = None
    payment_error: str | None = None

    created_at: datetime = field(default_factory=utcnow)
    history: list[AttemptEvent] = field(default_factory=list)

    # --- Internal helpers ---

    def _move(self, state: AttemptState, reason: str | None = None) -> None:
        logger.info(
            "Attempt %s: %s -> %s%s",
            self.id, self.state.value, state.value, f" ({reason})" if reason else "",
        )
        self.state = state
        self.history.append(AttemptEvent(state=state, at=utcnow(), reason=reason))

    def _require(self, action: str, *states: AttemptState) -> None:
        if self.state not in states:
            raise InvalidAttemptTransitionError(self.state.value, action)

    def _enter_verifying(
        self,
        method: AuthMethod,
        capture_seconds: int,
        challenge: str | None,
    ) -> None:
        self.method = method
        self.challenge = challenge
        self.failure_reason = None
        self.deadline = utcnow() + timedelta(seconds=capture_seconds)
        self._move(AttemptState.VERIFYING)

    # --- Queries ---

    @property
    def is_final(self) -> bool:
        return self.state == AttemptState.SUCCEEDED

    @property
    def proofs_remaining(self) -> int:
        return max(settings.MAX_VERIFICATION_ATTEMPTS - self.proofs_checked, 0)

    def is_overdue(self, now: datetime | None = None) -> bool:
        if self.state != AttemptState.VERIFYING or self.deadline is None:
            return False
        return (now or utcnow()) > self.deadline

    # --- Transitions ---

    def offer(self, candidates: list[AuthMethod]) -> None:
        """idle -> method_selection, or straight to failed when nothing is usable."""
        self._require("offer methods for", AttemptState.IDLE)
        self.candidates = list(candidates)
        if not self.candidates:
            self.failure_reason = NO_METHOD_AVAILABLE
            self._move(AttemptState.FAILED, NO_METHOD_AVAILABLE)
            return
        self._move(AttemptState.METHOD_SELECTION)

    def select(
        self,
        method: AuthMethod,
        capture_seconds: int,
        challenge: str | None = None,
    ) -> None:
        """method_selection -> verifying with the chosen candidate."""
        self._require("select a method for", AttemptState.METHOD_SELECTION)
        if method not in self.candidates:
            raise MethodNotPermittedError(f"{method.value} is not available for this payment")
        self._enter_verifying(method, capture_seconds, challenge)

    def expire_if_overdue(self, now: datetime | None = None) -> bool:
        """Fail a verifying attempt whose capture window has closed."""
        if not self.is_overdue(now):
            return False
        self.failure_reason = VerificationReason.TIMEOUT.value
        self._move(AttemptState.FAILED, self.failure_reason)
        return True

    def resolve(self, result: VerificationResult) -> None:
        """verifying -> succeeded | failed | cancelled, from a verifier result."""
        self._require("resolve", AttemptState.VERIFYING)
        if result.reason == VerificationReason.USER_CANCELLED:
            self._move(AttemptState.CANCELLED, result.reason.value)
            return

        self.proofs_checked += 1
        if result.matched:
            self.assurance = result.assurance
            self.credential_id = result.credential_id
            self._move(AttemptState.SUCCEEDED)
            return

        self.failure_reason = result.reason.value
        self._move(AttemptState.FAILED, self.failure_reason)

    def fail(self, reason: str) -> None:
        """Fail a verifying attempt for a reason outside the verifier (e.g. infrastructure)."""
        self._require("fail", AttemptState.VERIFYING)
        self.failure_reason = reason
        self._move(AttemptState.FAILED, reason)

    def unwind_success(self, reason: str) -> None:
        """succeeded -> failed when the ledger write behind the success never landed."""
        self._require("unwind", AttemptState.SUCCEEDED)
        self.proofs_checked = max(self.proofs_checked - 1, 0)
        self.assurance = None
        self.credential_id = None
        self.transaction_id = None
        self.payment_error = None
        self.failure_reason = reason
        self._move(AttemptState.FAILED, reason)

    def _ensure_retry_allowed(self, action: str) -> None:
        if self.failure_reason == NO_METHOD_AVAILABLE:
            raise InvalidAttemptTransitionError(self.state.value, action)
        if self.proofs_remaining == 0:
            raise InvalidAttemptTransitionError(
                self.state.value, f"{action} (no proofs remaining)"
            )

    def retry(
        self,
        capture_seconds: int,
        challenge: str | None = None,
    ) -> None:
        """failed -> verifying with the same method."""
        self._require("retry", AttemptState.FAILED)
        self._ensure_retry_allowed("retry")
        if self.method is None:
            raise InvalidAttemptTransitionError(self.state.value, "retry")
        self._enter_verifying(self.method, capture_seconds, challenge)

    def reselect(self) -> None:
        """failed | cancelled -> method_selection, only on caller request."""
        self._require("reselect a method for", AttemptState.FAILED, AttemptState.CANCELLED)
        self._ensure_retry_allowed("reselect a method for")
        self.method = None
        self.challenge = None
        self.deadline = None
        self.failure_reason = None
        self._move(AttemptState.METHOD_SELECTION)

    def cancel(self) -> None:
        """Any non-final state -> cancelled. Cancelling twice is a no-op."""
        if self.state == AttemptState.CANCELLED:
            return
        self._require(
            "cancel",
            AttemptState.IDLE,
            AttemptState.METHOD_SELECTION,
            AttemptState.VERIFYING,
            AttemptState.FAILED,
        )
        self.challenge = None
        self.deadline = None
        self._move(AttemptState.CANCELLED, "cancelled_by_caller")

    def decision(self) -> AuthorizationDecision:
        """
        The authorization this attempt grants.

        Raises:
            AuthorizationRequiredError: If the attempt has not succeeded.
        """
        if self.state != AttemptState.SUCCEEDED:
            raise AuthorizationRequiredError(
                f"Authorization attempt {self.id} has not succeeded"
            )
        return AuthorizationDecision(
            attempt_id=self.id,
            account_id=self.account_id,
            amount_minor=self.amount_minor,
            method=self.method,
            assurance=self.assurance,
            credential_id=self.credential_id,
        )


class AttemptRegistry:
    """
    In-process store of live attempts, keyed by id and scoped by account.

    Attempts older than ATTEMPT_TTL_SECONDS are discarded on access. The
    registry is per process: a multi-worker deployment needs sticky routing
    by attempt id.
    """

    def __init__(self):
        self._attempts: dict[uuid.UUID, AuthorizationAttempt] = {}

    def __len__(self) -> int:
        return len(self._attempts)

    def add(self, attempt: AuthorizationAttempt) -> AuthorizationAttempt:
        self.purge_expired()
        self._attempts[attempt.id] = attempt
        return attempt

    def get(self, attempt_id: uuid.UUID, account_id: uuid.UUID) -> AuthorizationAttempt:
        """
        Look up a live attempt owned by the account.

        Overdue verifying attempts are failed with "timeout" before being
        returned.

        Raises:
            AttemptNotFoundError: If it doesn't exist, expired, or belongs to
                another account.
        """
        self.purge_expired()
        attempt = self._attempts.get(attempt_id)
        if attempt is None or attempt.account_id != account_id:
            raise AttemptNotFoundError(attempt_id)
        attempt.expire_if_overdue()
        return attempt

    def discard_account(self, account_id: uuid.UUID) -> None:
        for attempt_id in [a.id for a in self._attempts.values() if a.account_id == account_id]:
            del self._attempts[attempt_id]

    def purge_expired(self, now: datetime | None = None) -> None:
        cutoff = (now or utcnow()) - timedelta(seconds=settings.ATTEMPT_TTL_SECONDS)
        expired = [a.id for a in self._attempts.values() if a.created_at < cutoff]
        for attempt_id in expired:
            del self._attempts[attempt_id]

    def clear(self) -> None:
        self._attempts.clear()


registry = AttemptRegistry()
