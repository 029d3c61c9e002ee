"""
Knowledge-factor verifier for the account password and transaction PIN.

Both secrets are Argon2 hashes on the Account row (hashed_password and
hashed_pin), so there is no Credential to load. The proof carries the secret
under a key named after the method: {"pin": "1234"} or {"password": "..."}.
The raw value is never logged.
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from payauth.exceptions import InvalidTemplateError
from payauth.models.account import Account
from payauth.models.credential import AssuranceLevel, AuthMethod
from payauth.security import verify_secret
from payauth.verifiers.base import (
    PreparedTemplate,
    VerificationContext,
    VerificationReason,
    VerificationResult,
    Verifier,
    is_cancellation,
)


class SecretVerifier(Verifier):
    assurance = AssuranceLevel.KNOWLEDGE

    def __init__(self, method: AuthMethod):
        if method not in (AuthMethod.PIN, AuthMethod.PASSWORD):
            raise ValueError(f"SecretVerifier does not handle {method.value}")
        self.method = method
        self.capture_setting = "PIN_ENTRY_SECONDS"

    @property
    def hash_field(self) -> str:
        return "hashed_pin" if self.method == AuthMethod.PIN else "hashed_password"

    def validate_template(self, raw: Any) -> PreparedTemplate:
        raise InvalidTemplateError(
            f"{self.method.value} is set on the account, not enrolled as a credential"
        )

    def match(
        self,
        stored: dict[str, Any],
        proof: Any,
        context: VerificationContext,
    ) -> VerificationResult:
        if is_cancellation(proof):
            return self.result(VerificationReason.USER_CANCELLED)
        if stored.get("hash") is None:
            return self.result(VerificationReason.NO_TEMPLATE_REGISTERED)
        secret = proof.get(self.method.value) if isinstance(proof, dict) else None
        if not isinstance(secret, str) or not secret:
            return self.result(VerificationReason.INVALID_PROOF)
        if verify_secret(secret, stored["hash"]):
            return self.result(VerificationReason.MATCHED)
        return self.result(VerificationReason.NO_MATCH)

    async def verify(
        self,
        db: AsyncSession,
        account: Account,
        proof: Any,
        context: VerificationContext | None = None,
    ) -> VerificationResult:
        stored = {"hash": getattr(account, self.hash_field)}
        return self.match(stored, proof, context or VerificationContext())
