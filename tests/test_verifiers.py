"""
Tests for the verifier set, at the service level.

These tests verify, for each method:
  - A matching proof resolves to "matched" and records last use
  - A non-matching proof resolves to "no_match", never an exception
  - Nothing enrolled (or only an inactive credential) is "no_template_registered"
  - {"cancelled": true} is "user_cancelled"
  - Malformed proofs are "invalid_proof"

Device-key specifics: the assertion must sign the issued challenge for the
configured origin and relying party, and its signature counter must advance.
"""

import base64

import numpy as np
import pytest

from payauth.config import settings
from payauth.models.credential import AssuranceLevel, AuthMethod, CredentialType
from payauth.services import auth_service, credential_service
from payauth.verifiers import VERIFIERS, VerificationContext, VerificationReason
from payauth.security import generate_challenge


def face(offset_first: float = 0.0) -> dict:
    embedding = [0.1] * settings.FACE_EMBEDDING_DIMENSIONS
    embedding[0] += offset_first
    return {"embedding": embedding}


def voice(vector: np.ndarray) -> dict:
    return {"embedding": base64.b64encode(vector.astype("<f4").tobytes()).decode()}


VOICE_BASE = np.linspace(0.1, 1.0, settings.VOICE_EMBEDDING_DIMENSIONS)


async def enroll(db, account, credential_type, template):
    credential = await credential_service.register(db, account.id, credential_type, template)
    await db.commit()
    return credential


class TestFaceVerifier:

    async def test_close_embedding_matches(self, db_session, account):
        credential = await enroll(db_session, account, CredentialType.FACE, face())
        result = await VERIFIERS[AuthMethod.FACE].verify(db_session, account, face(0.4))
        assert result.matched is True
        assert result.reason == VerificationReason.MATCHED
        assert result.assurance == AssuranceLevel.MEDIUM
        assert result.credential_id == credential.id
        assert result.score == pytest.approx(0.4)
        assert credential.last_used_at is not None

    async def test_distant_embedding_does_not_match(self, db_session, account):
        credential = await enroll(db_session, account, CredentialType.FACE, face())
        result = await VERIFIERS[AuthMethod.FACE].verify(db_session, account, face(0.9))
        assert result.matched is False
        assert result.reason == VerificationReason.NO_MATCH
        assert credential.last_used_at is None

    async def test_threshold_is_strict(self, db_session, account):
        await enroll(db_session, account, CredentialType.FACE, face())
        result = await VERIFIERS[AuthMethod.FACE].verify(
            db_session, account, face(settings.FACE_MATCH_THRESHOLD + 1e-6),
        )
        assert result.reason == VerificationReason.NO_MATCH

    async def test_nothing_enrolled(self, db_session, account):
        result = await VERIFIERS[AuthMethod.FACE].verify(db_session, account, face())
        assert result.reason == VerificationReason.NO_TEMPLATE_REGISTERED

    async def test_inactive_credential_is_not_used(self, db_session, account):
        credential = await enroll(db_session, account, CredentialType.FACE, face())
        await credential_service.set_active(db_session, account.id, credential.id, False)
        result = await VERIFIERS[AuthMethod.FACE].verify(db_session, account, face())
        assert result.reason == VerificationReason.NO_TEMPLATE_REGISTERED

    async def test_wrong_dimensions_is_invalid_proof(self, db_session, account):
        await enroll(db_session, account, CredentialType.FACE, face())
        result = await VERIFIERS[AuthMethod.FACE].verify(
            db_session, account, {"embedding": [0.1, 0.2]},
        )
        assert result.reason == VerificationReason.INVALID_PROOF

    async def test_cancelled(self, db_session, account):
        await enroll(db_session, account, CredentialType.FACE, face())
        result = await VERIFIERS[AuthMethod.FACE].verify(db_session, account, {"cancelled": True})
        assert result.reason == VerificationReason.USER_CANCELLED


class TestDeviceKeyVerifier:

    async def test_valid_assertion(self, db_session, account, authenticator):
        credential = await enroll(
            db_session, account, CredentialType.DEVICE_KEY, authenticator.template(),
        )
        challenge = generate_challenge()
        result = await VERIFIERS[AuthMethod.DEVICE_KEY].verify(
            db_session, account,
            authenticator.assert_challenge(challenge),
            VerificationContext(challenge=challenge),
        )
        assert result.matched is True
        assert result.assurance == AssuranceLevel.HIGH
        assert credential.sign_count == 1

    async def test_replayed_assertion_rejected(self, db_session, account, authenticator):
        await enroll(db_session, account, CredentialType.DEVICE_KEY, authenticator.template())
        challenge = generate_challenge()
        assertion = authenticator.assert_challenge(challenge)
        context = VerificationContext(challenge=challenge)
        verifier = VERIFIERS[AuthMethod.DEVICE_KEY]

        first = await verifier.verify(db_session, account, assertion, context)
        replay = await verifier.verify(db_session, account, assertion, context)
        assert first.matched is True
        assert replay.matched is False

    async def test_assertion_for_other_challenge(self, db_session, account, authenticator):
        await enroll(db_session, account, CredentialType.DEVICE_KEY, authenticator.template())
        result = await VERIFIERS[AuthMethod.DEVICE_KEY].verify(
            db_session, account,
            authenticator.assert_challenge(generate_challenge()),
            VerificationContext(challenge=generate_challenge()),
        )
        assert result.reason == VerificationReason.CHALLENGE_MISMATCH

    async def test_no_challenge_issued(self, db_session, account, authenticator):
        await enroll(db_session, account, CredentialType.DEVICE_KEY, authenticator.template())
        result = await VERIFIERS[AuthMethod.DEVICE_KEY].verify(
            db_session, account, authenticator.assert_challenge(), VerificationContext(),
        )
        assert result.reason == VerificationReason.CHALLENGE_MISMATCH

    @pytest.mark.parametrize(
        "overrides",
        [{"origin": "https://evil.example"}, {"rp_id": "evil.example"}],
    )
    async def test_wrong_relying_party(self, db_session, account, authenticator, overrides):
        await enroll(db_session, account, CredentialType.DEVICE_KEY, authenticator.template())
        challenge = generate_challenge()
        result = await VERIFIERS[AuthMethod.DEVICE_KEY].verify(
            db_session, account,
            authenticator.assert_challenge(challenge, **overrides),
            VerificationContext(challenge=challenge),
        )
        assert result.reason == VerificationReason.INVALID_PROOF

    async def test_user_not_present(self, db_session, account, authenticator):
        await enroll(db_session, account, CredentialType.DEVICE_KEY, authenticator.template())
        challenge = generate_challenge()
        result = await VERIFIERS[AuthMethod.DEVICE_KEY].verify(
            db_session, account,
            authenticator.assert_challenge(challenge, user_present=False),
            VerificationContext(challenge=challenge),
        )
        assert result.reason == VerificationReason.NO_MATCH

    async def test_signature_from_other_key(self, db_session, account, authenticator, impostor):
        await enroll(db_session, account, CredentialType.DEVICE_KEY, authenticator.template())
        challenge = generate_challenge()
        result = await VERIFIERS[AuthMethod.DEVICE_KEY].verify(
            db_session, account,
            impostor.assert_challenge(challenge),
            VerificationContext(challenge=challenge),
        )
        assert result.reason == VerificationReason.NO_MATCH

    async def test_garbage_proof(self, db_session, account, authenticator):
        await enroll(db_session, account, CredentialType.DEVICE_KEY, authenticator.template())
        result = await VERIFIERS[AuthMethod.DEVICE_KEY].verify(
            db_session, account, {"signature": "%%%"},
            VerificationContext(challenge=generate_challenge()),
        )
        assert result.reason == VerificationReason.INVALID_PROOF


class TestLowAssuranceVerifiers:

    async def test_voice_match(self, db_session, account):
        await enroll(db_session, account, CredentialType.VOICE, voice(VOICE_BASE))
        result = await VERIFIERS[AuthMethod.VOICE].verify(
            db_session, account, voice(VOICE_BASE * 2),
        )
        assert result.matched is True
        assert result.assurance == AssuranceLevel.LOW

    async def test_voice_mismatch(self, db_session, account):
        await enroll(db_session, account, CredentialType.VOICE, voice(VOICE_BASE))
        alternating = VOICE_BASE * np.where(np.arange(VOICE_BASE.size) % 2 == 0, 1.0, -1.0)
        result = await VERIFIERS[AuthMethod.VOICE].verify(
            db_session, account, voice(alternating),
        )
        assert result.reason == VerificationReason.NO_MATCH

    async def test_voice_garbage(self, db_session, account):
        await enroll(db_session, account, CredentialType.VOICE, voice(VOICE_BASE))
        result = await VERIFIERS[AuthMethod.VOICE].verify(
            db_session, account, {"embedding": "not base64!"},
        )
        assert result.reason == VerificationReason.INVALID_PROOF

    async def test_fingerprint(self, db_session, account):
        await enroll(db_session, account, CredentialType.FINGERPRINT, {"template": "ridge-1234"})
        verifier = VERIFIERS[AuthMethod.FINGERPRINT]

        good = await verifier.verify(db_session, account, {"template": "ridge-1234"})
        bad = await verifier.verify(db_session, account, {"template": "ridge-9999"})
        assert good.matched is True
        assert good.assurance == AssuranceLevel.LOW
        assert bad.reason == VerificationReason.NO_MATCH

    def test_low_assurance_flags(self):
        assert VERIFIERS[AuthMethod.VOICE].is_low_assurance
        assert VERIFIERS[AuthMethod.FINGERPRINT].is_low_assurance
        assert not VERIFIERS[AuthMethod.FACE].is_low_assurance
        assert not VERIFIERS[AuthMethod.DEVICE_KEY].is_low_assurance


class TestSecretVerifier:

    async def test_pin(self, db_session, account):
        await auth_service.set_pin(db_session, account, "1234")
        verifier = VERIFIERS[AuthMethod.PIN]

        good = await verifier.verify(db_session, account, {"pin": "1234"})
        bad = await verifier.verify(db_session, account, {"pin": "4321"})
        assert good.matched is True
        assert good.assurance == AssuranceLevel.KNOWLEDGE
        assert bad.reason == VerificationReason.NO_MATCH

    async def test_no_pin_set(self, db_session, account):
        result = await VERIFIERS[AuthMethod.PIN].verify(db_session, account, {"pin": "1234"})
        assert result.reason == VerificationReason.NO_TEMPLATE_REGISTERED

    async def test_password(self, db_session, account):
        result = await VERIFIERS[AuthMethod.PASSWORD].verify(
            db_session, account, {"password": "SecurePass123!"},
        )
        assert result.matched is True

    async def test_wrong_proof_key(self, db_session, account):
        await auth_service.set_pin(db_session, account, "1234")
        result = await VERIFIERS[AuthMethod.PIN].verify(
            db_session, account, {"password": "1234"},
        )
        assert result.reason == VerificationReason.INVALID_PROOF
