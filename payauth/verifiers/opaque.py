"""
Low-assurance fallback verifiers: voice sample and legacy fingerprint.

Neither is hardware backed, so both report AssuranceLevel.LOW. The ledger
refuses LOW decisions above LOW_ASSURANCE_MAX_AMOUNT_MINOR and the
coordinator stops offering these methods for such amounts.

Voice:
    The client records a short sample (about 3 seconds) and reduces it to a
    speaker embedding of VOICE_EMBEDDING_DIMENSIONS little-endian float32
    values, sent base64 encoded: {"embedding": "<base64>"}. A proof matches
    when its cosine similarity with the enrolled embedding is at least
    VOICE_MATCH_THRESHOLD.

Fingerprint (legacy):
    An opaque template string from the old demo flow: {"template": "..."}.
    Only its HMAC-SHA256 digest is stored, and a proof matches when its
    digest is equal (constant-time). Any other payload is a mismatch.
"""

import base64
import binascii
import hmac
import logging
from typing import Any

import numpy as np

from payauth.config import settings
from payauth.exceptions import InvalidTemplateError
from payauth.models.credential import AssuranceLevel, AuthMethod, CredentialType
from payauth.security import keyed_digest
from payauth.verifiers.base import (
    PreparedTemplate,
    VerificationContext,
    VerificationReason,
    VerificationResult,
    Verifier,
    is_cancellation,
)

logger = logging.getLogger(__name__)


def decode_voice_embedding(encoded: Any, dimensions: int) -> np.ndarray | None:
    """Decode a base64 float32 speaker embedding, or None if malformed."""
    if not isinstance(encoded, str) or not encoded:
        return None
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(raw) != dimensions * 4:
        return None
    vector = np.frombuffer(raw, dtype="<f4").astype(np.float64)
    if not np.all(np.isfinite(vector)) or not np.any(vector):
        return None
    return vector


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b)))


class VoiceVerifier(Verifier):
    method = AuthMethod.VOICE
    assurance = AssuranceLevel.LOW
    credential_type = CredentialType.VOICE
    capture_setting = "VOICE_CAPTURE_SECONDS"

    def validate_template(self, raw: Any) -> PreparedTemplate:
        dimensions = settings.VOICE_EMBEDDING_DIMENSIONS
        encoded = raw.get("embedding") if isinstance(raw, dict) else None
        if decode_voice_embedding(encoded, dimensions) is None:
            raise InvalidTemplateError(
                f"Voice embedding must be base64 of {dimensions} float32 values"
            )
        return PreparedTemplate(payload={"embedding": encoded})

    def match(
        self,
        stored: dict[str, Any],
        proof: Any,
        context: VerificationContext,
    ) -> VerificationResult:
        if is_cancellation(proof):
            return self.result(VerificationReason.USER_CANCELLED)

        dimensions = settings.VOICE_EMBEDDING_DIMENSIONS
        encoded = proof.get("embedding") if isinstance(proof, dict) else None
        submitted = decode_voice_embedding(encoded, dimensions)
        if submitted is None:
            return self.result(VerificationReason.INVALID_PROOF)

        enrolled = decode_voice_embedding(stored["embedding"], dimensions)
        similarity = cosine_similarity(enrolled, submitted)
        logger.debug("Voice similarity %.4f (threshold %.2f)", similarity, settings.VOICE_MATCH_THRESHOLD)

        if similarity >= settings.VOICE_MATCH_THRESHOLD:
            return self.result(VerificationReason.MATCHED, score=similarity)
        return self.result(VerificationReason.NO_MATCH, score=similarity)


class FingerprintVerifier(Verifier):
    method = AuthMethod.FINGERPRINT
    assurance = AssuranceLevel.LOW
    credential_type = CredentialType.FINGERPRINT
    capture_setting = "FINGERPRINT_CAPTURE_SECONDS"

    def validate_template(self, raw: Any) -> PreparedTemplate:
        template = raw.get("template") if isinstance(raw, dict) else None
        if not isinstance(template, str) or not template.strip():
            raise InvalidTemplateError("Fingerprint template must be a non-empty string")
        return PreparedTemplate(payload={"digest": keyed_digest(template)})

    def match(
        self,
        stored: dict[str, Any],
        proof: Any,
        context: VerificationContext,
    ) -> VerificationResult:
        if is_cancellation(proof):
            return self.result(VerificationReason.USER_CANCELLED)

        template = proof.get("template") if isinstance(proof, dict) else None
        if not isinstance(template, str) or not template:
            return self.result(VerificationReason.INVALID_PROOF)

        if hmac.compare_digest(keyed_digest(template), stored["digest"]):
            return self.result(VerificationReason.MATCHED)
        return self.result(VerificationReason.NO_MATCH)
