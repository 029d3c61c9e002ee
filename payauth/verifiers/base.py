"""
Common contract for every proof-of-identity verifier.

A verifier answers one question: does this submitted proof match what the
account enrolled for this method? Each method is a subclass of `Verifier`
registered in `payauth.verifiers.VERIFIERS`; the coordinator never branches
on the method type.

Two layers:
  - match(stored, proof, context): pure. Given the decrypted stored template
    and the submitted proof it returns a VerificationResult. No I/O.
  - verify(db, account, proof, context): loads the active credential for the
    account, calls match(), and on success records last use. This is the only
    side effect a verifier has.

Expected outcomes (no match, nothing enrolled, user cancelled, malformed
proof) are returned as results. Only infrastructure failures raise.
"""

import enum
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from payauth.config import settings
from payauth.models.account import Account
from payauth.models.credential import AssuranceLevel, AuthMethod, Credential, CredentialType
from payauth.security import decrypt_template, encrypt_template
from payauth.services import credential_service

logger = logging.getLogger(__name__)


class VerificationReason(str, enum.Enum):
    MATCHED = "matched"
    NO_MATCH = "no_match"
    NO_TEMPLATE_REGISTERED = "no_template_registered"
    USER_CANCELLED = "user_cancelled"
    CHALLENGE_MISMATCH = "challenge_mismatch"
    INVALID_PROOF = "invalid_proof"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class VerificationResult:
    """
    Outcome of one verification.

    `assurance` travels with the result so the ledger can apply limits by
    method strength. `score` is the raw distance or similarity for the
    biometric methods; it is logged, never returned to clients.
    """
    matched: bool
    reason: VerificationReason
    method: AuthMethod
    assurance: AssuranceLevel
    credential_id: uuid.UUID | None = None
    score: float | None = None


@dataclass(frozen=True)
class VerificationContext:
    """Per-attempt data a verifier may need beyond the proof itself."""
    challenge: str | None = None


@dataclass(frozen=True)
class PreparedTemplate:
    """A validated enrollment template, ready to be encrypted and stored."""
    payload: dict[str, Any]
    external_id: str | None = None

    def encrypt(self) -> bytes:
        return encrypt_template(json.dumps(self.payload).encode("utf-8"))


def is_cancellation(proof: Any) -> bool:
    """A proof of {"cancelled": true} means the holder declined the capture."""
    return isinstance(proof, dict) and proof.get("cancelled") is True


class Verifier(ABC):
    """Base class for all verification strategies."""

    method: AuthMethod
    assurance: AssuranceLevel
    credential_type: CredentialType | None = None
    # Name of the Settings field holding this method's capture window
    capture_setting: str

    @property
    def capture_seconds(self) -> int:
        return getattr(settings, self.capture_setting)

    @property
    def is_low_assurance(self) -> bool:
        return self.assurance == AssuranceLevel.LOW

    def result(
        self,
        reason: VerificationReason,
        score: float | None = None,
    ) -> VerificationResult:
        return VerificationResult(
            matched=reason == VerificationReason.MATCHED,
            reason=reason,
            method=self.method,
            assurance=self.assurance,
            score=score,
        )

    @abstractmethod
    def validate_template(self, raw: Any) -> PreparedTemplate:
        """
        Check an enrollment template's shape for this method.

        Raises:
            InvalidTemplateError: If the template cannot be enrolled.
        """

    @abstractmethod
    def match(
        self,
        stored: dict[str, Any],
        proof: Any,
        context: VerificationContext,
    ) -> VerificationResult:
        """Compare a proof with a decrypted stored template. Must stay pure."""

    def load_stored(self, credential: Credential) -> dict[str, Any]:
        return json.loads(decrypt_template(credential.template_encrypted))

    async def on_match(
        self,
        db: AsyncSession,
        credential: Credential,
        proof: Any,
    ) -> None:
        await credential_service.touch_last_used(db, credential)

    async def verify(
        self,
        db: AsyncSession,
        account: Account,
        proof: Any,
        context: VerificationContext | None = None,
    ) -> VerificationResult:
        """
        Verify a proof against the account's active credential of this type.

        Args:
            db: Database session.
            account: The account the proof claims to belong to.
            proof: Method-specific proof payload, as submitted by the client.
            context: Attempt data such as the issued challenge.

        Returns:
            A VerificationResult. Never raises for an expected mismatch.
        """
        context = context or VerificationContext()
        if is_cancellation(proof):
            return self.result(VerificationReason.USER_CANCELLED)

        credential = await credential_service.get_active(db, account.id, self.credential_type)
        if credential is None:
            return self.result(VerificationReason.NO_TEMPLATE_REGISTERED)

        result = self.match(self.load_stored(credential), proof, context)
        result = replace(result, credential_id=credential.id)
        if result.matched:
            await self.on_match(db, credential, proof)
        return result
