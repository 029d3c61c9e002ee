"""
Custom exception classes and FastAPI exception handlers.

The service layer raises domain-specific errors without importing HTTP
concepts. The handlers registered here translate them into consistent JSON
responses: {"detail": "...", "error_type": "..."}.

Expected verification outcomes (no match, cancelled, timeout) are NOT
exceptions: verifiers and the coordinator return them as typed results.
Exceptions are reserved for rejected requests and for infrastructure failures.

Exception hierarchy:
    PayAuthError (base)
    ├── DuplicateCredentialError      : second active credential of a type
    ├── InvalidTemplateError          : template fails type-specific shape checks
    ├── NotFoundError
    │   ├── AccountNotFoundError
    │   ├── CredentialNotFoundError
    │   ├── AttemptNotFoundError
    │   └── TransactionNotFoundError
    ├── InsufficientBalanceError      : debit larger than the balance
    ├── AuthorizationRequiredError    : ledger commit without a succeeded attempt
    ├── MethodNotPermittedError       : proof method too weak for the amount
    ├── InvalidAttemptTransitionError : state machine move not allowed
    ├── TransactionFinalizedError     : change to a terminal transaction
    ├── SettlementNotAllowedError     : settle a record that is not a completed debit
    ├── InvalidPaymentRequestError    : e.g. a transfer to yourself
    ├── DuplicateEmailError
    ├── InvalidCredentialsError       : login failed
    ├── InvalidSessionError           : bad, expired or revoked bearer token
    ├── FreshnessRequiredError        : sensitive op without a recent password check
    ├── RateLimitExceededError        : too many signups, logins or attempts
    └── SettlementError               : downstream gateway failed (internal only)
"""

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class PayAuthError(Exception):
    """Base exception for all domain errors."""

    status_code = 400
    error_type = "bad_request"

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------

class DuplicateCredentialError(PayAuthError):
    """Raised when an account already has an active credential of a type."""

    status_code = 409
    error_type = "duplicate_credential"

    def __init__(self, credential_type: str):
        self.credential_type = credential_type
        super().__init__(f"An active {credential_type} credential is already registered")


class InvalidTemplateError(PayAuthError):
    """Raised when an enrollment template has the wrong shape for its type."""

    status_code = 422
    error_type = "invalid_template"


class NotFoundError(PayAuthError):
    status_code = 404
    error_type = "not_found"


class AccountNotFoundError(NotFoundError):
    def __init__(self, account_id: uuid.UUID):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class CredentialNotFoundError(NotFoundError):
    def __init__(self, credential_id: uuid.UUID):
        self.credential_id = credential_id
        super().__init__(f"Credential {credential_id} not found")


class AttemptNotFoundError(NotFoundError):
    def __init__(self, attempt_id: uuid.UUID):
        self.attempt_id = attempt_id
        super().__init__(f"Authorization attempt {attempt_id} not found")


class TransactionNotFoundError(NotFoundError):
    def __init__(self, transaction_id: uuid.UUID):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


# ---------------------------------------------------------------------------
# Ledger and authorization
# ---------------------------------------------------------------------------

class InsufficientBalanceError(PayAuthError):
    """
    Raised when a debit would take the balance below zero.

    Attributes:
        account_id: The account that lacks sufficient funds.
        requested_minor: The amount the caller tried to debit.
        available_minor: The balance at the moment of the check.
        transaction_id: The failed audit record written for this debit.
    """

    status_code = 422
    error_type = "insufficient_balance"

    def __init__(
        self,
        account_id: uuid.UUID,
        requested_minor: int,
        available_minor: int,
        transaction_id: uuid.UUID | None = None,
    ):
        self.account_id = account_id
        self.requested_minor = requested_minor
        self.available_minor = available_minor
        self.transaction_id = transaction_id
        super().__init__(
            f"Insufficient balance: requested {requested_minor}, "
            f"available {available_minor}"
        )


class AuthorizationRequiredError(PayAuthError):
    """Raised when a ledger commit is not backed by a succeeded attempt."""

    status_code = 403
    error_type = "authorization_required"


class MethodNotPermittedError(PayAuthError):
    """Raised when a low-assurance method is used above its amount ceiling."""

    status_code = 403
    error_type = "method_not_permitted"


class InvalidAttemptTransitionError(PayAuthError):
    """Raised when an authorization attempt cannot make the requested move."""

    status_code = 409
    error_type = "invalid_attempt_transition"

    def __init__(self, state: str, action: str):
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action} an attempt in state '{state}'")


class TransactionFinalizedError(PayAuthError):
    """Raised when something tries to change a terminal transaction."""

    status_code = 409
    error_type = "transaction_finalized"


class SettlementNotAllowedError(PayAuthError):
    """Raised when settlement is requested for a record that cannot be settled."""

    status_code = 409
    error_type = "settlement_not_allowed"


class InvalidPaymentRequestError(PayAuthError):
    """Raised for a payment request the ledger could never honor (e.g. paying yourself)."""

    status_code = 400
    error_type = "invalid_payment_request"


class SettlementError(PayAuthError):
    """Raised by settlement gateways. Never surfaced to clients."""

    status_code = 502
    error_type = "settlement_failed"


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class DuplicateEmailError(PayAuthError):
    status_code = 409
    error_type = "duplicate_email"

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Email {email} is already registered")


class InvalidCredentialsError(PayAuthError):
    """Raised when login or password confirmation fails."""

    status_code = 401
    error_type = "invalid_credentials"

    def __init__(self, detail: str = "Invalid email or password"):
        super().__init__(detail)


class InvalidSessionError(PayAuthError):
    """Raised for a missing, expired, revoked or forged bearer token."""

    status_code = 401
    error_type = "invalid_session"

    def __init__(self, detail: str = "Could not validate session"):
        super().__init__(detail)


class FreshnessRequiredError(PayAuthError):
    """Raised when a sensitive operation lacks a recent password confirmation."""

    status_code = 403
    error_type = "freshness_required"

    def __init__(self):
        super().__init__("Confirm your password to continue")


class RateLimitExceededError(PayAuthError):
    """Raised when a client exceeds a request throttle."""

    status_code = 429
    error_type = "rate_limited"

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__("Too many requests, please try again later")


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:
    """
    Register the exception handlers with the FastAPI application.

    Called once during app setup in main.py.
    """

    @app.exception_handler(InsufficientBalanceError)
    async def insufficient_balance_handler(
        request: Request, exc: InsufficientBalanceError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error_type": exc.error_type,
                "requested_minor": exc.requested_minor,
                "available_minor": exc.available_minor,
            },
        )

    @app.exception_handler(InvalidSessionError)
    async def invalid_session_handler(
        request: Request, exc: InvalidSessionError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error_type": exc.error_type},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(RateLimitExceededError)
    async def rate_limited_handler(
        request: Request, exc: RateLimitExceededError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error_type": exc.error_type},
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )

    @app.exception_handler(PayAuthError)
    async def payauth_error_handler(
        request: Request, exc: PayAuthError
    ) -> JSONResponse:
        if isinstance(exc, SettlementError):
            # Gateway detail stays in the logs
            logger.error("Settlement error reached a request: %s", exc.detail)
            return JSONResponse(
                status_code=503,
                content={
                    "detail": "Service temporarily unavailable, please retry",
                    "error_type": "service_unavailable",
                },
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error_type": exc.error_type},
        )

    @app.exception_handler(SQLAlchemyError)
    async def persistence_error_handler(
        request: Request, exc: SQLAlchemyError
    ) -> JSONResponse:
        logger.exception("Persistence failure on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=503,
            content={
                "detail": "Service temporarily unavailable, please retry",
                "error_type": "service_unavailable",
            },
        )
