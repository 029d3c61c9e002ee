"""
Pydantic schemas for credential management.

Templates go in, never come out: CredentialResponse carries metadata only.
The template's shape depends on the type and is checked by its verifier:

  device_key:  {"credential_id", "public_key", "algorithm"}
  face:        {"embedding": [128 floats]}
  voice:       {"embedding": "<base64 float32>"}
  fingerprint: {"template": "<opaque string>"}
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from payauth.models.credential import CredentialType


class CredentialRegisterRequest(BaseModel):
    """Request body for POST /credentials."""
    type: CredentialType
    template: dict[str, Any]
    label: str | None = Field(None, max_length=100)


class CredentialLabelRequest(BaseModel):
    """Request body for PATCH /credentials/{id}."""
    label: str | None = Field(None, max_length=100)


class CredentialActiveRequest(BaseModel):
    """Request body for PUT /credentials/{id}/active."""
    active: bool


class CredentialResponse(BaseModel):
    id: uuid.UUID
    type: CredentialType
    label: str | None
    is_active: bool
    last_used_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
