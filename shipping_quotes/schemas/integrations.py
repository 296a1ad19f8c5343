"""
Integration Schemas

Credential administration requests and responses. Secrets are never echoed:
tokens come back masked and client secrets only as a presence flag.
"""
from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class CredentialUpsert(BaseModel):
    """
    Replace the active credential.

    Leave access_token empty to request a token with client_id/client_secret
    (or the stored/configured ones).
    """
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(None, gt=0)
    client_id: Optional[str] = Field(None, max_length=255)
    client_secret: Optional[str] = None
    cep_origem: Optional[str] = Field(None, max_length=9)
    additional_data: Optional[Dict[str, Any]] = None


class CredentialResponse(BaseModel):
    provider: str
    environment: str
    state: str
    token_type: str
    access_token: str  # masked
    has_refresh_token: bool
    client_id: Optional[str] = None
    has_client_secret: bool
    expires_at: Optional[datetime] = None
    validation_status: str
    validation_error: Optional[str] = None
    additional_data: Dict[str, Any] = {}


class CredentialValidationResponse(BaseModel):
    valid: bool
    status: str
    message: str
    last_validated_at: datetime
