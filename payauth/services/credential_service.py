"""
Credential store: enrollment and management of proof-of-identity methods.

Each account can hold at most one ACTIVE credential per type. The rule is
checked here for a friendly error and enforced again by the partial unique
index on the credentials table, so two registrations racing for the same
(account, type) cannot both commit. The loser's flush hits IntegrityError,
its transaction is rolled back, and it gets the same DuplicateCredentialError.

Templates are validated by the type's verifier (shape only), then encrypted
with Fernet before storage. They are never returned by any read here.

last_used_at is touched only by the verifier set on a successful match.
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payauth import verifiers
from payauth.exceptions import CredentialNotFoundError, DuplicateCredentialError
from payauth.models.credential import Credential, CredentialType
from payauth.time_utils import utcnow

logger = logging.getLogger(__name__)


async def get_active(
    db: AsyncSession,
    account_id: uuid.UUID,
    credential_type: CredentialType,
) -> Credential | None:
    result = await db.execute(
        select(Credential).where(
            Credential.account_id == account_id,
            Credential.type == credential_type,
            Credential.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def active_types(db: AsyncSession, account_id: uuid.UUID) -> set[CredentialType]:
    """Return the credential types the account can currently verify with."""
    result = await db.execute(
        select(Credential.type).where(
            Credential.account_id == account_id,
            Credential.is_active.is_(True),
        )
    )
    return set(result.scalars().all())


async def register(
    db: AsyncSession,
    account_id: uuid.UUID,
    credential_type: CredentialType,
    template: dict,
    label: str | None = None,
) -> Credential:
    """
    Enroll a new credential for an account.

    Args:
        db: Database session.
        account_id: The owning account.
        credential_type: Which proof method this enrolls.
        template: Raw enrollment payload, validated by the type's verifier.
        label: Optional human-readable name ("Pixel 8", "Work laptop").

    Returns:
        The created Credential.

    Raises:
        DuplicateCredentialError: If an active credential of this type exists,
            including when a concurrent registration commits first.
        InvalidTemplateError: If the template has the wrong shape for the type.
    """
    if await get_active(db, account_id, credential_type) is not None:
        raise DuplicateCredentialError(credential_type.value)

    prepared = verifiers.verifier_for_credential(credential_type).validate_template(template)

    now = utcnow()
    credential = Credential(
        account_id=account_id,
        type=credential_type,
        template_encrypted=prepared.encrypt(),
        external_id=prepared.external_id,
        label=label,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(credential)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise DuplicateCredentialError(credential_type.value)

    logger.info("Registered %s credential %s for account %s", credential_type.value, credential.id, account_id)
    return credential


async def list_credentials(db: AsyncSession, account_id: uuid.UUID) -> list[Credential]:
    """All credentials for an account, active and inactive, oldest first."""
    result = await db.execute(
        select(Credential)
        .where(Credential.account_id == account_id)
        .order_by(Credential.created_at, Credential.id)
    )
    return list(result.scalars().all())


async def get_credential(
    db: AsyncSession,
    account_id: uuid.UUID,
    credential_id: uuid.UUID,
) -> Credential:
    """
    Fetch one of the caller's credentials.

    Raises:
        CredentialNotFoundError: If it doesn't exist or belongs to another account.
    """
    result = await db.execute(
        select(Credential).where(
            Credential.id == credential_id,
            Credential.account_id == account_id,
        )
    )
    credential = result.scalar_one_or_none()
    if credential is None:
        raise CredentialNotFoundError(credential_id)
    return credential


async def set_active(
    db: AsyncSession,
    account_id: uuid.UUID,
    credential_id: uuid.UUID,
    active: bool,
) -> Credential:
    """
    Activate or deactivate a credential. Idempotent.

    Setting the flag to the value it already has returns the credential
    untouched: no write, no updated_at change.

    Raises:
        CredentialNotFoundError: If the credential is not the caller's.
        DuplicateCredentialError: If activating while another credential of
            the same type is active.
    """
    credential = await get_credential(db, account_id, credential_id)
    if credential.is_active == active:
        return credential

    if active:
        current = await get_active(db, account_id, credential.type)
        if current is not None:
            raise DuplicateCredentialError(credential.type.value)

    credential.is_active = active
    credential.updated_at = utcnow()
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise DuplicateCredentialError(credential.type.value)

    logger.info("Credential %s %s", credential_id, "activated" if active else "deactivated")
    return credential


async def relabel(
    db: AsyncSession,
    account_id: uuid.UUID,
    credential_id: uuid.UUID,
    label: str | None,
) -> Credential:
    credential = await get_credential(db, account_id, credential_id)
    if credential.label != label:
        credential.label = label
        credential.updated_at = utcnow()
        await db.flush()
    return credential


async def remove(
    db: AsyncSession,
    account_id: uuid.UUID,
    credential_id: uuid.UUID,
) -> None:
    """
    Hard-delete one of the caller's credentials.

    Raises:
        CredentialNotFoundError: If the credential is not the caller's.
    """
    credential = await get_credential(db, account_id, credential_id)
    await db.delete(credential)
    await db.flush()
    logger.info("Removed %s credential %s", credential.type.value, credential_id)


async def touch_last_used(
    db: AsyncSession,
    credential: Credential,
    sign_count: int | None = None,
) -> None:
    """Record a successful verification. Only the verifier set calls this."""
    credential.last_used_at = utcnow()
    if sign_count is not None:
        credential.sign_count = sign_count
    await db.flush()
