"""
Credentials router: enrol and manage proof-of-identity methods.

Endpoints:
  POST   /credentials                Enrol a credential (fresh session)
  GET    /credentials                List your credentials
  PATCH  /credentials/{id}           Change the label
  PUT    /credentials/{id}/active    Activate or deactivate
  DELETE /credentials/{id}           Remove (fresh session)

Enrolment and removal change what can authorize a payment, so both require
a password confirmation within the freshness window. Templates are accepted
on enrolment and never returned.
"""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from payauth.database import get_db
from payauth.dependencies import get_current_account, require_fresh_session
from payauth.models.account import Account
from payauth.schemas.credential import (
    CredentialActiveRequest,
    CredentialLabelRequest,
    CredentialRegisterRequest,
    CredentialResponse,
)
from payauth.services import credential_service

router = APIRouter()


@router.post(
    "",
    response_model=CredentialResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enrol a credential",
)
async def register_credential(
    request: CredentialRegisterRequest,
    account: Account = Depends(require_fresh_session),
    db: AsyncSession = Depends(get_db),
):
    """
    Enrol a device key, face, voice or fingerprint template.

    At most one credential of each type may be active. Registering a second
    one returns 409; deactivate or remove the existing one first.
    """
    return await credential_service.register(
        db,
        account_id=account.id,
        credential_type=request.type,
        template=request.template,
        label=request.label,
    )


@router.get(
    "",
    response_model=list[CredentialResponse],
    summary="List your credentials",
)
async def list_credentials(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await credential_service.list_credentials(db, account.id)


@router.patch(
    "/{credential_id}",
    response_model=CredentialResponse,
    summary="Rename a credential",
)
async def relabel_credential(
    credential_id: uuid.UUID,
    request: CredentialLabelRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await credential_service.relabel(db, account.id, credential_id, request.label)


@router.put(
    "/{credential_id}/active",
    response_model=CredentialResponse,
    summary="Activate or deactivate a credential",
)
async def set_credential_active(
    credential_id: uuid.UUID,
    request: CredentialActiveRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """
    Toggle whether a credential may authorize payments.

    Setting the current value again is a no-op and returns the credential
    unchanged.
    """
    return await credential_service.set_active(db, account.id, credential_id, request.active)


@router.delete(
    "/{credential_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a credential",
)
async def remove_credential(
    credential_id: uuid.UUID,
    account: Account = Depends(require_fresh_session),
    db: AsyncSession = Depends(get_db),
):
    await credential_service.remove(db, account.id, credential_id)
