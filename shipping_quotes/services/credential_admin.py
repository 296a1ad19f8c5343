"""
Credential Administration

Operations behind the /integrations endpoints:
- Replace the active credential with a pasted token, or obtain one through
  the client_credentials grant when no token is supplied
- Re-authorize (fresh grant regardless of the stored validation status)
- Validate the stored token against the aggregator and record the outcome
- Remove the active credential
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from shipping_quotes.core.config import INTEGRATION_ENVIRONMENTS
from shipping_quotes.core.exceptions import (
    CarrierAuthError,
    CarrierError,
    CredentialError,
    CredentialNotFoundError,
    ValidationError,
)
from shipping_quotes.models.integration_token import TokenValidationStatus
from shipping_quotes.services.melhor_envio_client import MelhorEnvioClient
from shipping_quotes.services.oauth_credentials import (
    CREDENTIAL_UNREADABLE,
    REAUTHORIZATION_UNAVAILABLE,
    ClientCredentials,
    CredentialManager,
    CredentialState,
    StoredCredential,
)

logger = logging.getLogger(__name__)

MASKED_MARKER = "***"


@dataclass
class CredentialValidation:
    valid: bool
    status: str
    message: str
    validated_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clean_access_token(value: str) -> str:
    """Strip whitespace and a leading "Bearer " from a pasted token."""
    token = value.strip()
    if token.lower().startswith("bearer "):
        token = token[len("bearer "):].strip()
    if not token:
        raise ValidationError("access_token is empty", code="INVALID_ACCESS_TOKEN")
    if MASKED_MARKER in token:
        raise ValidationError(
            "access_token looks masked; paste the complete token",
            code="MASKED_ACCESS_TOKEN",
        )
    return token


class CredentialAdminService:
    """Administrative operations on aggregator credentials."""

    def __init__(
        self,
        credential_manager: CredentialManager,
        carrier_client: MelhorEnvioClient,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.credential_manager = credential_manager
        self.carrier_client = carrier_client
        self._now = now

    def _check_target(self, provider: str, environment: str) -> None:
        if provider not in self.credential_manager.providers:
            raise ValidationError(
                f"Unknown provider {provider!r}",
                code="INVALID_PROVIDER",
                details={"allowed": sorted(self.credential_manager.providers)},
            )
        if environment not in INTEGRATION_ENVIRONMENTS:
            raise ValidationError(
                f"Unknown environment {environment!r}",
                code="INVALID_ENVIRONMENT",
                details={"allowed": list(INTEGRATION_ENVIRONMENTS)},
            )

    @staticmethod
    def _not_found(provider: str, environment: str) -> CredentialNotFoundError:
        return CredentialNotFoundError(
            f"No {provider} credential stored for {environment}",
            details={"provider": provider, "environment": environment},
        )

    async def _readable_credential(self, provider: str, environment: str) -> Optional[StoredCredential]:
        """Active credential, or None when absent or undecryptable (it is about to be replaced)."""
        try:
            return await self.credential_manager.get_credential(provider, environment)
        except CredentialError as e:
            if e.code != CREDENTIAL_UNREADABLE:
                raise
            logger.warning(f"Replacing unreadable {provider}/{environment} credential")
            return None

    # ==================== Read ====================

    async def get_credential(self, provider: str, environment: str) -> Tuple[StoredCredential, CredentialState]:
        self._check_target(provider, environment)
        credential = await self.credential_manager.get_credential(provider, environment)
        if credential is None:
            raise self._not_found(provider, environment)
        return credential, await self.credential_manager.get_state(provider, environment)

    # ==================== Write ====================

    async def upsert_credential(
        self,
        provider: str,
        environment: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> StoredCredential:
        """
        Replace the active credential.

        With an access token the new credential is stored as pending validation.
        Without one, a token is requested with the supplied (or stored, or
        configured) client id/secret.

        Raises:
            ValidationError: unknown provider/environment, empty or masked token
            CredentialError: the client_credentials grant failed
        """
        self._check_target(provider, environment)
        client_credentials = ClientCredentials(client_id, client_secret) if client_id and client_secret else None

        if not access_token:
            return await self.credential_manager.reauthorize(
                provider,
                environment,
                client_credentials=client_credentials,
                additional_data=additional_data,
            )

        existing = await self._readable_credential(provider, environment)
        credential = StoredCredential(
            provider=provider,
            environment=environment,
            access_token=clean_access_token(access_token),
            refresh_token=refresh_token or None,
            expires_at=self._now() + timedelta(seconds=expires_in) if expires_in else None,
            client_id=client_id or (existing.client_id if existing else None),
            client_secret=client_secret or (existing.client_secret if existing else None),
            additional_data={**(existing.additional_data if existing else {}), **(additional_data or {})},
            validation_status=TokenValidationStatus.PENDING,
        )
        return await self.credential_manager.store_credential(credential)

    async def reauthorize(self, provider: str, environment: str) -> StoredCredential:
        self._check_target(provider, environment)
        return await self.credential_manager.reauthorize(provider, environment)

    async def delete_credential(self, provider: str, environment: str) -> None:
        self._check_target(provider, environment)
        if not await self.credential_manager.remove(provider, environment):
            raise self._not_found(provider, environment)

    # ==================== Validation ====================

    def _result(self, valid: bool, status: str, message: str) -> CredentialValidation:
        return CredentialValidation(valid=valid, status=status, message=message, validated_at=self._now())

    async def validate_credential(self, provider: str, environment: str) -> CredentialValidation:
        """
        Check the stored token against the aggregator and record the outcome.

        An expired or invalid credential is re-authorized first when a grant is
        available. A 401/403 records "invalid"; other aggregator failures record
        "error" and leave the credential usable.

        Raises:
            CredentialNotFoundError: nothing stored
            CredentialError: the stored credential cannot be decrypted
        """
        self._check_target(provider, environment)
        credential = await self.credential_manager.get_credential(provider, environment)
        if credential is None:
            raise self._not_found(provider, environment)

        token = credential.access_token
        if credential.is_invalid or self.credential_manager.needs_refresh(credential):
            try:
                token = (await self.credential_manager.reauthorize(provider, environment)).access_token
            except CredentialError as e:
                if e.code != REAUTHORIZATION_UNAVAILABLE:
                    return self._result(False, TokenValidationStatus.INVALID, e.message)
                # Static token with no grant available: check it as stored
                logger.info(f"No grant available for {provider}/{environment}; checking the stored token")

        try:
            await self.carrier_client.check_token(environment, token)
        except CarrierAuthError as e:
            await self.credential_manager.record_validation(
                provider, environment, TokenValidationStatus.INVALID, e.message
            )
            return self._result(False, TokenValidationStatus.INVALID, e.message)
        except CarrierError as e:
            await self.credential_manager.record_validation(
                provider, environment, TokenValidationStatus.ERROR, e.message
            )
            return self._result(False, TokenValidationStatus.ERROR, e.message)

        await self.credential_manager.record_validation(provider, environment, TokenValidationStatus.VALID)
        return self._result(True, TokenValidationStatus.VALID, "Token accepted by the aggregator")
