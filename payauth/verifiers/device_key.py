"""
Device-bound public-key verifier (platform authenticator assertions).

Enrollment stores the authenticator's credential id and its public key. The
private key never leaves the device. At payment time the coordinator issues a
fresh challenge, the device signs it, and this verifier checks the assertion
the way a WebAuthn relying party does:

    1. credential id matches the enrolled one
    2. clientDataJSON.type == "webauthn.get"
    3. clientDataJSON.challenge == the challenge issued for this attempt
    4. clientDataJSON.origin == RP_ORIGIN
    5. authenticatorData.rpIdHash == SHA-256(RP_ID)
    6. user-present flag is set
    7. signature over authenticatorData || SHA-256(clientDataJSON) verifies
    8. signature counter moved forward (when the authenticator keeps one)

Template (enrollment input):
    {"credential_id": "<base64url>",
     "public_key": "<base64url DER SubjectPublicKeyInfo>",
     "algorithm": "ES256" | "RS256"}

Proof (assertion):
    {"credential_id", "authenticator_data", "client_data_json", "signature"}
    all base64url.
"""

import binascii
import hashlib
import hmac
import json
import logging
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from sqlalchemy.ext.asyncio import AsyncSession

from payauth.config import settings
from payauth.exceptions import InvalidTemplateError
from payauth.models.credential import AssuranceLevel, AuthMethod, Credential, CredentialType
from payauth.security import b64url_decode
from payauth.services import credential_service
from payauth.verifiers.base import (
    PreparedTemplate,
    VerificationContext,
    VerificationReason,
    VerificationResult,
    Verifier,
    is_cancellation,
)

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("ES256", "RS256")

# authenticatorData layout: rpIdHash(32) | flags(1) | signCount(4) | ...
_RP_ID_HASH_END = 32
_FLAGS_INDEX = 32
_SIGN_COUNT_END = 37
_FLAG_USER_PRESENT = 0x01

_DECODE_ERRORS = (binascii.Error, ValueError, TypeError, UnicodeDecodeError)


def _load_public_key(encoded: str, algorithm: str):
    try:
        public_key = serialization.load_der_public_key(b64url_decode(encoded))
    except _DECODE_ERRORS as exc:
        raise InvalidTemplateError("public_key is not a DER encoded public key") from exc

    if algorithm == "ES256":
        if not isinstance(public_key, ec.EllipticCurvePublicKey) or not isinstance(
            public_key.curve, ec.SECP256R1
        ):
            raise InvalidTemplateError("ES256 requires a P-256 public key")
    elif not isinstance(public_key, rsa.RSAPublicKey):
        raise InvalidTemplateError("RS256 requires an RSA public key")
    return public_key


def _sign_count(authenticator_data: bytes) -> int:
    return int.from_bytes(authenticator_data[_FLAGS_INDEX + 1:_SIGN_COUNT_END], "big")


class DeviceKeyVerifier(Verifier):
    method = AuthMethod.DEVICE_KEY
    assurance = AssuranceLevel.HIGH
    credential_type = CredentialType.DEVICE_KEY
    capture_setting = "DEVICE_KEY_CEREMONY_SECONDS"

    def validate_template(self, raw: Any) -> PreparedTemplate:
        if not isinstance(raw, dict):
            raise InvalidTemplateError("device_key template must be an object")

        credential_id = raw.get("credential_id")
        if not isinstance(credential_id, str) or not credential_id.strip():
            raise InvalidTemplateError("device_key template requires a credential_id")
        try:
            b64url_decode(credential_id)
        except _DECODE_ERRORS as exc:
            raise InvalidTemplateError("credential_id must be base64url") from exc

        algorithm = raw.get("algorithm", "ES256")
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise InvalidTemplateError(
                f"Unsupported algorithm {algorithm!r}; expected one of {SUPPORTED_ALGORITHMS}"
            )

        public_key = raw.get("public_key")
        if not isinstance(public_key, str) or not public_key:
            raise InvalidTemplateError("device_key template requires a public_key")
        _load_public_key(public_key, algorithm)

        return PreparedTemplate(
            payload={
                "credential_id": credential_id,
                "public_key": public_key,
                "algorithm": algorithm,
            },
            external_id=credential_id,
        )

    def load_stored(self, credential: Credential) -> dict[str, Any]:
        stored = super().load_stored(credential)
        stored["sign_count"] = credential.sign_count
        return stored

    def match(
        self,
        stored: dict[str, Any],
        proof: Any,
        context: VerificationContext,
    ) -> VerificationResult:
        if is_cancellation(proof):
            return self.result(VerificationReason.USER_CANCELLED)
        if not isinstance(proof, dict):
            return self.result(VerificationReason.INVALID_PROOF)

        try:
            credential_id = proof["credential_id"]
            authenticator_data = b64url_decode(proof["authenticator_data"])
            client_data_raw = b64url_decode(proof["client_data_json"])
            signature = b64url_decode(proof["signature"])
            client_data = json.loads(client_data_raw)
        except (KeyError, *_DECODE_ERRORS):
            return self.result(VerificationReason.INVALID_PROOF)

        if not isinstance(client_data, dict) or len(authenticator_data) < _SIGN_COUNT_END:
            return self.result(VerificationReason.INVALID_PROOF)

        if not isinstance(credential_id, str) or not hmac.compare_digest(
            credential_id.encode(), stored["credential_id"].encode()
        ):
            return self.result(VerificationReason.NO_MATCH)

        if client_data.get("type") != "webauthn.get":
            return self.result(VerificationReason.INVALID_PROOF)

        challenge = client_data.get("challenge")
        if (
            context.challenge is None
            or not isinstance(challenge, str)
            or not hmac.compare_digest(challenge.encode(), context.challenge.encode())
        ):
            return self.result(VerificationReason.CHALLENGE_MISMATCH)

        if client_data.get("origin") != settings.RP_ORIGIN:
            logger.warning("Device key assertion from unexpected origin")
            return self.result(VerificationReason.INVALID_PROOF)

        expected_rp_hash = hashlib.sha256(settings.RP_ID.encode()).digest()
        if not hmac.compare_digest(authenticator_data[:_RP_ID_HASH_END], expected_rp_hash):
            return self.result(VerificationReason.INVALID_PROOF)

        if not authenticator_data[_FLAGS_INDEX] & _FLAG_USER_PRESENT:
            return self.result(VerificationReason.NO_MATCH)

        signed = authenticator_data + hashlib.sha256(client_data_raw).digest()
        public_key = _load_public_key(stored["public_key"], stored["algorithm"])
        try:
            if stored["algorithm"] == "ES256":
                public_key.verify(signature, signed, ec.ECDSA(hashes.SHA256()))
            else:
                public_key.verify(signature, signed, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            return self.result(VerificationReason.NO_MATCH)

        # A counter that does not move forward suggests a cloned authenticator
        sign_count = _sign_count(authenticator_data)
        stored_count = stored.get("sign_count", 0)
        if (sign_count or stored_count) and sign_count <= stored_count:
            logger.warning("Device key signature counter did not advance")
            return self.result(VerificationReason.NO_MATCH)

        return self.result(VerificationReason.MATCHED)

    async def on_match(
        self,
        db: AsyncSession,
        credential: Credential,
        proof: Any,
    ) -> None:
        sign_count = _sign_count(b64url_decode(proof["authenticator_data"]))
        await credential_service.touch_last_used(db, credential, sign_count=sign_count)
