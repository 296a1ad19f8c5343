"""
Melhor Envio OAuth 2.0 token endpoint client.

Both grants post form-encoded data to {base}/oauth/token:
- client_credentials: HTTP Basic auth with the app's client id/secret
- refresh_token: the stored refresh token (client id/secret included when known)
"""
import base64
import logging
from typing import Optional

import httpx

from shipping_quotes.core.config import settings, SANDBOX
from shipping_quotes.core.exceptions import CredentialError
from shipping_quotes.services.encryption import sanitize_for_logging
from shipping_quotes.services.oauth_credentials import (
    MELHOR_ENVIO,
    ClientCredentials,
    OAuthTokenProvider,
    TokenGrant,
)

logger = logging.getLogger(__name__)

MELHOR_ENVIO_PRODUCTION_URL = "https://melhorenvio.com.br"
MELHOR_ENVIO_SANDBOX_URL = "https://sandbox.melhorenvio.com.br"

OAUTH_TOKEN_PATH = "/oauth/token"

# Used when the token response omits expires_in
DEFAULT_EXPIRES_IN_SECONDS = 30 * 24 * 3600


def melhor_envio_base_url(environment: str) -> str:
    return MELHOR_ENVIO_SANDBOX_URL if environment == SANDBOX else MELHOR_ENVIO_PRODUCTION_URL


class MelhorEnvioOAuthProvider(OAuthTokenProvider):
    """Token provider for the Melhor Envio aggregator."""

    supports_client_credentials = True

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.MELHOR_ENVIO_TIMEOUT_SECONDS)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def request_client_credentials(
        self,
        client_credentials: ClientCredentials,
        environment: str,
    ) -> TokenGrant:
        auth_string = f"{client_credentials.client_id}:{client_credentials.client_secret}"
        auth_header = base64.b64encode(auth_string.encode()).decode()

        grant = await self._post_token(
            environment,
            data={
                "grant_type": "client_credentials",
                "client_id": client_credentials.client_id,
                "client_secret": client_credentials.client_secret,
            },
            headers={"Authorization": f"Basic {auth_header}"},
        )
        if not grant.refresh_token:
            logger.warning(
                f"Melhor Envio returned no refresh_token ({environment}); "
                "renewal will use client_credentials again"
            )
        return grant

    async def refresh(
        self,
        refresh_token: str,
        environment: str,
        client_credentials: Optional[ClientCredentials] = None,
    ) -> TokenGrant:
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if client_credentials is not None:
            data["client_id"] = client_credentials.client_id
            data["client_secret"] = client_credentials.client_secret

        grant = await self._post_token(environment, data=data)
        # Keep the old refresh token when the provider does not rotate it
        if not grant.refresh_token:
            grant.refresh_token = refresh_token
        return grant

    async def _post_token(self, environment: str, data: dict, headers: Optional[dict] = None) -> TokenGrant:
        client = await self._get_http_client()
        url = f"{melhor_envio_base_url(environment)}{OAUTH_TOKEN_PATH}"
        request_headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
            "User-Agent": settings.MELHOR_ENVIO_USER_AGENT,
        }
        request_headers.update(headers or {})

        try:
            response = await client.post(url, data=data, headers=request_headers)
        except httpx.RequestError as e:
            logger.error(f"Melhor Envio OAuth request failed ({environment}): {e}")
            raise CredentialError(
                f"Network error during token exchange: {e}",
                provider=MELHOR_ENVIO,
                environment=environment,
                code="TOKEN_EXCHANGE_NETWORK_ERROR",
            )

        if response.status_code != 200:
            logger.error(
                f"Melhor Envio OAuth failed ({environment}): {response.status_code} - "
                f"{sanitize_for_logging(response.text)}"
            )
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            if not isinstance(error_data, dict):
                error_data = {}
            reason = error_data.get("message") or error_data.get("error") or response.reason_phrase
            raise CredentialError(
                f"Token exchange rejected: {reason}",
                provider=MELHOR_ENVIO,
                environment=environment,
                code="TOKEN_EXCHANGE_FAILED",
                details={"status_code": response.status_code},
            )

        try:
            payload = response.json()
        except ValueError:
            logger.error(f"Melhor Envio OAuth returned a non-JSON body ({environment})")
            raise self._malformed(environment, "Token response is not JSON")

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise self._malformed(environment, "Token response has no access_token")

        try:
            expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        except (TypeError, ValueError):
            raise self._malformed(environment, f"Invalid expires_in {payload.get('expires_in')!r}")

        logger.info(f"Melhor Envio OAuth token obtained ({environment}), expires in {expires_in}s")
        return TokenGrant(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or None,
            expires_in=expires_in,
            token_type=payload.get("token_type") or "bearer",
        )

    @staticmethod
    def _malformed(environment: str, message: str) -> CredentialError:
        return CredentialError(
            message,
            provider=MELHOR_ENVIO,
            environment=environment,
            code="TOKEN_EXCHANGE_FAILED",
        )
