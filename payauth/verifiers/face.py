"""
Face-embedding verifier.

The client runs face detection and produces a fixed-length descriptor
(FACE_EMBEDDING_DIMENSIONS floats). Enrollment stores that vector; a payment
proof submits a fresh one. The two match when their Euclidean distance is
strictly below FACE_MATCH_THRESHOLD.

Template and proof: {"embedding": [float, ...]}

The distance is returned in VerificationResult.score and logged at DEBUG.
It is never sent to the client.
"""

import logging
from typing import Any

import numpy as np

from payauth.config import settings
from payauth.exceptions import InvalidTemplateError
from payauth.models.credential import AssuranceLevel, AuthMethod, CredentialType
from payauth.verifiers.base import (
    PreparedTemplate,
    VerificationContext,
    VerificationReason,
    VerificationResult,
    Verifier,
    is_cancellation,
)

logger = logging.getLogger(__name__)


def as_embedding(values: Any, dimensions: int) -> np.ndarray | None:
    """Return a finite 1-D float vector of the given length, or None."""
    if not isinstance(values, (list, tuple)) or any(isinstance(v, bool) for v in values):
        return None
    try:
        vector = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if vector.shape != (dimensions,) or not np.all(np.isfinite(vector)):
        return None
    return vector


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.linalg.norm(a - b))


class FaceVerifier(Verifier):
    method = AuthMethod.FACE
    assurance = AssuranceLevel.MEDIUM
    credential_type = CredentialType.FACE
    capture_setting = "FACE_CAPTURE_SECONDS"

    def validate_template(self, raw: Any) -> PreparedTemplate:
        dimensions = settings.FACE_EMBEDDING_DIMENSIONS
        values = raw.get("embedding") if isinstance(raw, dict) else None
        vector = as_embedding(values, dimensions)
        if vector is None:
            raise InvalidTemplateError(
                f"Face embedding must be a list of {dimensions} finite numbers"
            )
        return PreparedTemplate(payload={"embedding": vector.tolist()})

    def match(
        self,
        stored: dict[str, Any],
        proof: Any,
        context: VerificationContext,
    ) -> VerificationResult:
        if is_cancellation(proof):
            return self.result(VerificationReason.USER_CANCELLED)

        dimensions = settings.FACE_EMBEDDING_DIMENSIONS
        submitted = as_embedding(proof.get("embedding") if isinstance(proof, dict) else None, dimensions)
        if submitted is None:
            return self.result(VerificationReason.INVALID_PROOF)

        enrolled = np.asarray(stored["embedding"], dtype=np.float64)
        distance = euclidean_distance(enrolled, submitted)
        logger.debug("Face distance %.4f (threshold %.2f)", distance, settings.FACE_MATCH_THRESHOLD)

        if distance < settings.FACE_MATCH_THRESHOLD:
            return self.result(VerificationReason.MATCHED, score=distance)
        return self.result(VerificationReason.NO_MATCH, score=distance)
