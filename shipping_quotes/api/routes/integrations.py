"""
Integration API Routes

Administration of the aggregator OAuth credentials:
- Inspect the active credential (masked)
- Replace it, or obtain a new one through the client_credentials grant
- Re-authorize and validate, which is how an invalidated credential recovers
- Remove it
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Response

from shipping_quotes.api.deps import get_credential_admin_service
from shipping_quotes.services.credential_admin import CredentialAdminService
from shipping_quotes.services.encryption import mask_token
from shipping_quotes.services.oauth_credentials import CredentialState, StoredCredential
from shipping_quotes.services.postal_code import normalize_postal_code
from shipping_quotes.schemas.integrations import (
    CredentialResponse,
    CredentialUpsert,
    CredentialValidationResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])


def credential_to_response(credential: StoredCredential, state: Optional[CredentialState] = None) -> CredentialResponse:
    if state is None:
        state = CredentialState.INVALID if credential.is_invalid else CredentialState.VALID
    return CredentialResponse(
        provider=credential.provider,
        environment=credential.environment,
        state=state.value,
        token_type=credential.token_type,
        access_token=mask_token(credential.access_token),
        has_refresh_token=bool(credential.refresh_token),
        client_id=credential.client_id,
        has_client_secret=bool(credential.client_secret),
        expires_at=credential.expires_at,
        validation_status=credential.validation_status,
        validation_error=credential.validation_error,
        additional_data=credential.additional_data or {},
    )


@router.get("/{provider}/{environment}", response_model=CredentialResponse)
async def get_credential(
    provider: str,
    environment: str,
    service: CredentialAdminService = Depends(get_credential_admin_service),
):
    credential, state = await service.get_credential(provider, environment)
    return credential_to_response(credential, state)


@router.put("/{provider}/{environment}", response_model=CredentialResponse)
async def upsert_credential(
    provider: str,
    environment: str,
    body: CredentialUpsert,
    service: CredentialAdminService = Depends(get_credential_admin_service),
):
    """Replace the active credential. Without access_token, a client_credentials grant is made."""
    additional_data = dict(body.additional_data or {})
    if body.cep_origem:
        additional_data["cep_origem"] = normalize_postal_code(body.cep_origem, "cep_origem")

    credential = await service.upsert_credential(
        provider,
        environment,
        access_token=body.access_token,
        refresh_token=body.refresh_token,
        expires_in=body.expires_in,
        client_id=body.client_id,
        client_secret=body.client_secret,
        additional_data=additional_data or None,
    )
    return credential_to_response(credential)


@router.delete("/{provider}/{environment}", status_code=204)
async def delete_credential(
    provider: str,
    environment: str,
    service: CredentialAdminService = Depends(get_credential_admin_service),
):
    await service.delete_credential(provider, environment)
    return Response(status_code=204)


@router.post("/{provider}/{environment}/reauthorize", response_model=CredentialResponse)
async def reauthorize_credential(
    provider: str,
    environment: str,
    service: CredentialAdminService = Depends(get_credential_admin_service),
):
    credential = await service.reauthorize(provider, environment)
    return credential_to_response(credential)


@router.post("/{provider}/{environment}/validate", response_model=CredentialValidationResponse)
async def validate_credential(
    provider: str,
    environment: str,
    service: CredentialAdminService = Depends(get_credential_admin_service),
):
    """Call the aggregator with the stored token and record the result."""
    result = await service.validate_credential(provider, environment)
    return CredentialValidationResponse(
        valid=result.valid,
        status=result.status,
        message=result.message,
        last_validated_at=result.validated_at,
    )
