"""
Verifier registry.

One instance per AuthMethod. Adding a proof method means writing one
Verifier subclass and adding it to VERIFIERS; nothing else branches on type.
"""

from payauth.models.credential import AuthMethod, CredentialType
from payauth.verifiers.base import (  # noqa: F401
    PreparedTemplate,
    VerificationContext,
    VerificationReason,
    VerificationResult,
    Verifier,
    is_cancellation,
)
from payauth.verifiers.device_key import DeviceKeyVerifier
from payauth.verifiers.face import FaceVerifier
from payauth.verifiers.opaque import FingerprintVerifier, VoiceVerifier
from payauth.verifiers.secret import SecretVerifier


VERIFIERS: dict[AuthMethod, Verifier] = {
    verifier.method: verifier
    for verifier in (
        DeviceKeyVerifier(),
        FaceVerifier(),
        VoiceVerifier(),
        FingerprintVerifier(),
        SecretVerifier(AuthMethod.PIN),
        SecretVerifier(AuthMethod.PASSWORD),
    )
}


def verifier_for_credential(credential_type: CredentialType) -> Verifier:
    return VERIFIERS[AuthMethod(credential_type.value)]
