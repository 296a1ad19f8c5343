"""
API dependencies

The credential manager, carrier client and postal lookup are process-wide:
the credential manager's single-flight refresh only holds within one instance.
"""
from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_quotes.core.database import get_db
from shipping_quotes.core.quote_cache import QuoteCache, get_quote_cache
from shipping_quotes.services.credential_admin import CredentialAdminService
from shipping_quotes.services.integration_tokens import IntegrationTokenStore
from shipping_quotes.services.melhor_envio_client import MelhorEnvioClient
from shipping_quotes.services.melhor_envio_oauth import MelhorEnvioOAuthProvider
from shipping_quotes.services.oauth_credentials import MELHOR_ENVIO, CredentialManager
from shipping_quotes.services.postal_code import PostalCodeLookup
from shipping_quotes.services.quote_service import QuoteService

_oauth_provider: Optional[MelhorEnvioOAuthProvider] = None
_credential_manager: Optional[CredentialManager] = None
_carrier_client: Optional[MelhorEnvioClient] = None
_postal_lookup: Optional[PostalCodeLookup] = None


def get_credential_manager() -> CredentialManager:
    global _oauth_provider, _credential_manager
    if _credential_manager is None:
        _oauth_provider = MelhorEnvioOAuthProvider()
        _credential_manager = CredentialManager(
            IntegrationTokenStore(),
            {MELHOR_ENVIO: _oauth_provider},
        )
    return _credential_manager


def get_carrier_client(
    credential_manager: CredentialManager = Depends(get_credential_manager),
) -> MelhorEnvioClient:
    global _carrier_client
    if _carrier_client is None:
        _carrier_client = MelhorEnvioClient(credential_manager)
    return _carrier_client


def get_postal_lookup() -> PostalCodeLookup:
    global _postal_lookup
    if _postal_lookup is None:
        _postal_lookup = PostalCodeLookup()
    return _postal_lookup


async def get_quote_service(
    db: AsyncSession = Depends(get_db),
    cache: QuoteCache = Depends(get_quote_cache),
    credential_manager: CredentialManager = Depends(get_credential_manager),
    carrier_client: MelhorEnvioClient = Depends(get_carrier_client),
    postal_lookup: PostalCodeLookup = Depends(get_postal_lookup),
) -> QuoteService:
    """Request-scoped QuoteService bound to the request's session."""
    return QuoteService(
        db,
        carrier_client=carrier_client,
        credential_manager=credential_manager,
        cache=cache,
        postal_lookup=postal_lookup,
    )


async def get_credential_admin_service(
    credential_manager: CredentialManager = Depends(get_credential_manager),
    carrier_client: MelhorEnvioClient = Depends(get_carrier_client),
) -> CredentialAdminService:
    return CredentialAdminService(credential_manager, carrier_client)


async def close_clients():
    """Close the shared HTTP clients on shutdown."""
    global _oauth_provider, _credential_manager, _carrier_client, _postal_lookup

    if _carrier_client is not None:
        await _carrier_client.close()
    if _oauth_provider is not None:
        await _oauth_provider.close()
    if _postal_lookup is not None:
        await _postal_lookup.close()

    _oauth_provider = None
    _credential_manager = None
    _carrier_client = None
    _postal_lookup = None
