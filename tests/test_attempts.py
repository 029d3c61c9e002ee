"""
Tests for the authorization attempt state machine (no database, no HTTP).

These tests verify:
  - idle -> method_selection, or straight to failed when nothing is usable
  - Only offered candidates can be selected
  - Verifier outcomes drive verifying -> succeeded | failed | cancelled
  - A user-declined capture lands in cancelled and is not retried
  - Retries are capped at MAX_VERIFICATION_ATTEMPTS checked proofs
  - succeeded is final
  - An overdue capture window fails the attempt with "timeout"
  - The registry scopes attempts by account and expires them
"""

import uuid
from datetime import timedelta

import pytest

from payauth import attempts as attempts_module
from payauth.attempts import (
    NO_METHOD_AVAILABLE,
    UNAVAILABLE,
    AttemptRegistry,
    AttemptState,
    AuthorizationAttempt,
)
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
from payauth.verifiers import VERIFIERS, VerificationReason


def make_attempt(candidates=(AuthMethod.FACE, AuthMethod.PIN), amount_minor=45_000):
    attempt = AuthorizationAttempt(
        account_id=uuid.uuid4(),
        amount_minor=amount_minor,
        txn_type=TransactionType.PAYMENT,
    )
    attempt.offer(list(candidates))
    return attempt


def verifying(method=AuthMethod.FACE):
    attempt = make_attempt()
    attempt.select(method, capture_seconds=30)
    return attempt


def outcome(reason, method=AuthMethod.FACE):
    return VERIFIERS[method].result(reason)


class TestOffer:

    def test_candidates_move_to_method_selection(self):
        attempt = make_attempt()
        assert attempt.state == AttemptState.METHOD_SELECTION
        assert attempt.candidates == [AuthMethod.FACE, AuthMethod.PIN]

    def test_no_candidates_fails_immediately(self):
        attempt = make_attempt(candidates=())
        assert attempt.state == AttemptState.FAILED
        assert attempt.failure_reason == NO_METHOD_AVAILABLE

    def test_no_candidates_cannot_be_retried(self):
        attempt = make_attempt(candidates=())
        with pytest.raises(InvalidAttemptTransitionError):
            attempt.reselect()
        with pytest.raises(InvalidAttemptTransitionError):
            attempt.retry(capture_seconds=30)


class TestSelect:

    def test_select_candidate(self):
        attempt = verifying()
        assert attempt.state == AttemptState.VERIFYING
        assert attempt.method == AuthMethod.FACE
        assert attempt.deadline > utcnow()

    def test_select_non_candidate(self):
        attempt = make_attempt()
        with pytest.raises(MethodNotPermittedError):
            attempt.select(AuthMethod.DEVICE_KEY, capture_seconds=60)
        assert attempt.state == AttemptState.METHOD_SELECTION

    def test_select_twice(self):
        attempt = verifying()
        with pytest.raises(InvalidAttemptTransitionError):
            attempt.select(AuthMethod.PIN, capture_seconds=120)


class TestResolve:

    def test_match_succeeds(self):
        attempt = verifying()
        attempt.resolve(outcome(VerificationReason.MATCHED))
        assert attempt.state == AttemptState.SUCCEEDED
        assert attempt.assurance == AssuranceLevel.MEDIUM
        assert attempt.is_final

        decision = attempt.decision()
        assert decision.method == AuthMethod.FACE
        assert decision.amount_minor == attempt.amount_minor
        assert decision.attempt_id == attempt.id

    def test_no_match_fails_with_reason(self):
        attempt = verifying()
        attempt.resolve(outcome(VerificationReason.NO_MATCH))
        assert attempt.state == AttemptState.FAILED
        assert attempt.failure_reason == "no_match"
        assert attempt.proofs_remaining == settings.MAX_VERIFICATION_ATTEMPTS - 1

    def test_user_cancelled_lands_in_cancelled(self):
        attempt = verifying()
        attempt.resolve(outcome(VerificationReason.USER_CANCELLED))
        assert attempt.state == AttemptState.CANCELLED
        assert attempt.proofs_checked == 0

    def test_cancelled_is_not_retried(self):
        attempt = verifying()
        attempt.resolve(outcome(VerificationReason.USER_CANCELLED))
        with pytest.raises(InvalidAttemptTransitionError):
            attempt.retry(capture_seconds=30)

    def test_cancelled_can_reselect(self):
        attempt = verifying()
        attempt.resolve(outcome(VerificationReason.USER_CANCELLED))
        attempt.reselect()
        assert attempt.state == AttemptState.METHOD_SELECTION
        assert attempt.method is None

    def test_decision_requires_success(self):
        attempt = verifying()
        with pytest.raises(AuthorizationRequiredError):
            attempt.decision()


class TestRetry:

    def test_retry_same_method(self):
        attempt = verifying()
        attempt.resolve(outcome(VerificationReason.NO_MATCH))
        attempt.retry(capture_seconds=30)
        assert attempt.state == AttemptState.VERIFYING
        assert attempt.method == AuthMethod.FACE
        assert attempt.failure_reason is None

    def test_retries_are_capped(self):
        attempt = verifying()
        for _ in range(settings.MAX_VERIFICATION_ATTEMPTS - 1):
            attempt.resolve(outcome(VerificationReason.NO_MATCH))
            attempt.retry(capture_seconds=30)
        attempt.resolve(outcome(VerificationReason.NO_MATCH))

        assert attempt.proofs_remaining == 0
        with pytest.raises(InvalidAttemptTransitionError):
            attempt.retry(capture_seconds=30)
        with pytest.raises(InvalidAttemptTransitionError):
            attempt.reselect()

    def test_switch_method_after_failure(self):
        attempt = verifying()
        attempt.resolve(outcome(VerificationReason.NO_MATCH))
        attempt.reselect()
        attempt.select(AuthMethod.PIN, capture_seconds=120)
        attempt.resolve(outcome(VerificationReason.MATCHED, AuthMethod.PIN))
        assert attempt.state == AttemptState.SUCCEEDED
        assert attempt.decision().method == AuthMethod.PIN


class TestFinality:

    def test_succeeded_cannot_be_cancelled(self):
        attempt = verifying()
        attempt.resolve(outcome(VerificationReason.MATCHED))
        with pytest.raises(InvalidAttemptTransitionError):
            attempt.cancel()

    def test_succeeded_cannot_be_reselected(self):
        attempt = verifying()
        attempt.resolve(outcome(VerificationReason.MATCHED))
        with pytest.raises(InvalidAttemptTransitionError):
            attempt.reselect()

    def test_cancel_is_idempotent(self):
        attempt = verifying()
        attempt.cancel()
        attempt.cancel()
        assert attempt.state == AttemptState.CANCELLED
        assert [e.state for e in attempt.history].count(AttemptState.CANCELLED) == 1

    def test_history_records_each_transition(self):
        attempt = verifying()
        attempt.resolve(outcome(VerificationReason.MATCHED))
        assert [e.state for e in attempt.history] == [
            AttemptState.METHOD_SELECTION,
            AttemptState.VERIFYING,
            AttemptState.SUCCEEDED,
        ]

    def test_unwound_success_is_retryable(self):
        attempt = verifying()
        attempt.resolve(outcome(VerificationReason.MATCHED))
        attempt.unwind_success(UNAVAILABLE)

        assert attempt.state == AttemptState.FAILED
        assert attempt.failure_reason == UNAVAILABLE
        assert attempt.assurance is None
        assert attempt.proofs_remaining == settings.MAX_VERIFICATION_ATTEMPTS
        with pytest.raises(AuthorizationRequiredError):
            attempt.decision()

        attempt.retry(capture_seconds=30)
        assert attempt.state == AttemptState.VERIFYING

    def test_only_succeeded_can_be_unwound(self):
        attempt = verifying()
        with pytest.raises(InvalidAttemptTransitionError):
            attempt.unwind_success(UNAVAILABLE)


class TestTimeout:

    def test_overdue_capture_fails_with_timeout(self, monkeypatch):
        attempt = verifying()
        later = attempt.deadline + timedelta(seconds=1)
        monkeypatch.setattr(attempts_module, "utcnow", lambda: later)

        assert attempt.expire_if_overdue() is True
        assert attempt.state == AttemptState.FAILED
        assert attempt.failure_reason == "timeout"

    def test_within_window_is_untouched(self):
        attempt = verifying()
        assert attempt.expire_if_overdue() is False
        assert attempt.state == AttemptState.VERIFYING

    def test_timeout_can_be_retried(self, monkeypatch):
        attempt = verifying()
        monkeypatch.setattr(
            attempts_module, "utcnow", lambda: attempt.deadline + timedelta(seconds=1),
        )
        attempt.expire_if_overdue()
        monkeypatch.undo()

        attempt.retry(capture_seconds=30)
        assert attempt.state == AttemptState.VERIFYING


class TestRegistry:

    def test_get_scoped_by_account(self):
        registry = AttemptRegistry()
        attempt = registry.add(make_attempt())

        assert registry.get(attempt.id, attempt.account_id) is attempt
        with pytest.raises(AttemptNotFoundError):
            registry.get(attempt.id, uuid.uuid4())

    def test_get_expires_overdue_attempt(self, monkeypatch):
        registry = AttemptRegistry()
        attempt = registry.add(verifying())
        monkeypatch.setattr(
            attempts_module, "utcnow", lambda: attempt.deadline + timedelta(seconds=1),
        )
        assert registry.get(attempt.id, attempt.account_id).state == AttemptState.FAILED

    def test_ttl_purge(self):
        registry = AttemptRegistry()
        attempt = registry.add(make_attempt())
        registry.purge_expired(now=utcnow() + timedelta(seconds=settings.ATTEMPT_TTL_SECONDS + 1))
        assert len(registry) == 0
        with pytest.raises(AttemptNotFoundError):
            registry.get(attempt.id, attempt.account_id)

    def test_discard_account(self):
        registry = AttemptRegistry()
        mine = registry.add(make_attempt())
        other = registry.add(make_attempt())
        registry.discard_account(mine.account_id)
        assert len(registry) == 1
        assert registry.get(other.id, other.account_id) is other
