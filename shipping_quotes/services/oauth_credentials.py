"""
OAuth credential manager.

Hands out usable access tokens for (provider, environment) pairs and owns the
token lifecycle:

    ABSENT ──grant──▶ VALID ──expiring──▶ REFRESHING ──▶ VALID
                                              │
                                              └──failure──▶ INVALID

A credential marked INVALID fails fast until an administrator re-authorizes,
replaces or validates it (see services.credential_admin).
Refreshes are single-flight per key: concurrent callers that find the token
expired all await the same in-flight exchange.
"""
import asyncio
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from shipping_quotes.core.config import settings
from shipping_quotes.core.exceptions import CredentialError
from shipping_quotes.models.integration_token import TokenValidationStatus
from shipping_quotes.services.encryption import mask_token

logger = logging.getLogger(__name__)

MELHOR_ENVIO = "melhor_envio"

# CredentialError codes
CREDENTIAL_UNREADABLE = "CREDENTIAL_UNREADABLE"
REAUTHORIZATION_UNAVAILABLE = "REAUTHORIZATION_UNAVAILABLE"


class CredentialState(str, enum.Enum):
    ABSENT = "absent"
    VALID = "valid"
    EXPIRED = "expired"  # needs a refresh, none running yet
    REFRESHING = "refreshing"
    INVALID = "invalid"


# =============================================================================
# Data classes
# =============================================================================

@dataclass
class ClientCredentials:
    client_id: str
    client_secret: str


@dataclass
class TokenGrant:
    """Token endpoint response, normalized."""
    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int]
    token_type: str = "bearer"


@dataclass
class StoredCredential:
    """Decrypted view of an integration_tokens row."""
    provider: str
    environment: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)
    validation_status: str = TokenValidationStatus.PENDING
    validation_error: Optional[str] = None
    token_type: str = "bearer"
    id: Optional[int] = None

    @property
    def is_invalid(self) -> bool:
        return self.validation_status == TokenValidationStatus.INVALID


# =============================================================================
# Collaborator interfaces
# =============================================================================

class TokenStore(ABC):
    """Persistence for OAuth credentials (see services.integration_tokens)."""

    @abstractmethod
    async def get_active(self, provider: str, environment: str) -> Optional[StoredCredential]:
        pass

    @abstractmethod
    async def save(self, credential: StoredCredential) -> StoredCredential:
        """Store as the active credential, deactivating any previous one."""
        pass

    @abstractmethod
    async def mark_invalid(self, provider: str, environment: str, reason: str) -> None:
        pass

    @abstractmethod
    async def set_validation(
        self,
        provider: str,
        environment: str,
        status: str,
        error: Optional[str] = None,
    ) -> bool:
        """Record a validation outcome on the active credential. False when there is none."""
        pass

    @abstractmethod
    async def deactivate(self, provider: str, environment: str) -> bool:
        """Retire the active credential. False when there is none."""
        pass


class OAuthTokenProvider(ABC):
    """Talks to one provider's token endpoint."""

    supports_client_credentials: bool = False

    @abstractmethod
    async def refresh(
        self,
        refresh_token: str,
        environment: str,
        client_credentials: Optional[ClientCredentials] = None,
    ) -> TokenGrant:
        pass

    async def request_client_credentials(
        self,
        client_credentials: ClientCredentials,
        environment: str,
    ) -> TokenGrant:
        raise CredentialError(
            "Provider does not support the client_credentials grant",
            environment=environment,
        )


# =============================================================================
# Manager
# =============================================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialManager:
    """
    Process-scoped manager for OAuth access tokens.

    The in-flight refresh map lives on the instance, so a single manager must be
    shared by every request that can trigger a refresh (see api.deps).
    """

    def __init__(
        self,
        token_store: TokenStore,
        providers: Dict[str, OAuthTokenProvider],
        refresh_margin_seconds: Optional[int] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.token_store = token_store
        self.providers = providers
        self.refresh_margin = timedelta(
            seconds=settings.OAUTH_REFRESH_MARGIN_SECONDS if refresh_margin_seconds is None else refresh_margin_seconds
        )
        self._now = now
        self._inflight: Dict[Tuple[str, str], "asyncio.Task[StoredCredential]"] = {}

    def needs_refresh(self, credential: StoredCredential) -> bool:
        # No expiry recorded: static token
        if credential.expires_at is None:
            return False
        expires_at = credential.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return self._now() >= expires_at - self.refresh_margin

    # ==================== Public API ====================

    async def get_valid_token(self, provider: str, environment: str) -> str:
        """
        Return an access token that is valid for at least the refresh margin.

        Raises:
            CredentialError: credential invalid, unreadable, missing, or the exchange failed
        """
        credential = await self.token_store.get_active(provider, environment)

        if credential is not None:
            if credential.is_invalid:
                raise _invalid_credential_error(credential)
            if not self.needs_refresh(credential):
                return credential.access_token

        renewed = await self._renew_single_flight(provider, environment)
        return renewed.access_token

    async def get_credential(self, provider: str, environment: str) -> Optional[StoredCredential]:
        return await self.token_store.get_active(provider, environment)

    async def get_state(self, provider: str, environment: str) -> CredentialState:
        if (provider, environment) in self._inflight:
            return CredentialState.REFRESHING

        try:
            credential = await self.token_store.get_active(provider, environment)
        except CredentialError:
            return CredentialState.INVALID
        if credential is None:
            return CredentialState.ABSENT
        if credential.is_invalid:
            return CredentialState.INVALID
        if self.needs_refresh(credential):
            return CredentialState.EXPIRED
        return CredentialState.VALID

    async def get_additional_data(self, provider: str, environment: str) -> Dict[str, Any]:
        credential = await self.token_store.get_active(provider, environment)
        if credential is None:
            return {}
        return dict(credential.additional_data or {})

    async def mark_invalid(self, provider: str, environment: str, reason: str) -> None:
        logger.warning(f"Marking {provider}/{environment} credential invalid: {reason}")
        await self.token_store.mark_invalid(provider, environment, reason)

    async def resolve_client_credentials(
        self,
        provider: str,
        environment: str,
        credential: Optional[StoredCredential] = None,
    ) -> ClientCredentials:
        """
        Client id/secret for a grant. Stored values win over process configuration.

        Raises:
            CredentialError: when neither source has both values
        """
        resolved = await self._lookup_client_credentials(provider, environment, credential)
        if resolved is None:
            raise CredentialError(
                f"No client id/secret configured for {provider} ({environment})",
                provider=provider,
                environment=environment,
            )
        return resolved

    # ==================== Administration ====================

    async def store_credential(self, credential: StoredCredential) -> StoredCredential:
        """Make an administrator-supplied credential the active one."""
        saved = await self.token_store.save(replace(credential, id=None))
        logger.info(
            f"{credential.provider}/{credential.environment} credential replaced "
            f"({mask_token(saved.access_token)}, status={saved.validation_status})"
        )
        return saved

    async def reauthorize(
        self,
        provider: str,
        environment: str,
        client_credentials: Optional[ClientCredentials] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> StoredCredential:
        """
        Obtain a new token whatever the stored validation status.

        The client_credentials grant is preferred (explicit id/secret, then the
        stored ones, then configuration); the stored refresh token is the fallback.

        Raises:
            CredentialError: no way to re-authorize, or the exchange failed
        """
        return await self._renew_single_flight(
            provider,
            environment,
            force=True,
            client_credentials=client_credentials,
            additional_data=additional_data,
        )

    async def record_validation(
        self,
        provider: str,
        environment: str,
        status: str,
        error: Optional[str] = None,
    ) -> bool:
        logger.info(f"{provider}/{environment} credential validation: {status}")
        return await self.token_store.set_validation(provider, environment, status, error)

    async def remove(self, provider: str, environment: str) -> bool:
        removed = await self.token_store.deactivate(provider, environment)
        if removed:
            logger.info(f"{provider}/{environment} credential removed")
        return removed

    # ==================== Internals ====================

    async def _lookup_client_credentials(
        self,
        provider: str,
        environment: str,
        credential: Optional[StoredCredential] = None,
    ) -> Optional[ClientCredentials]:
        if credential is None:
            credential = await self.token_store.get_active(provider, environment)

        if credential is not None and credential.client_id and credential.client_secret:
            return ClientCredentials(credential.client_id, credential.client_secret)

        if provider == MELHOR_ENVIO:
            client_id, client_secret = settings.melhor_envio_client_credentials(environment)
            if client_id and client_secret:
                return ClientCredentials(client_id, client_secret)

        return None

    async def _renew_single_flight(
        self,
        provider: str,
        environment: str,
        force: bool = False,
        client_credentials: Optional[ClientCredentials] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> StoredCredential:
        key = (provider, environment)
        # A forced renewal never joins a routine refresh; later callers join it instead
        task = None if force else self._inflight.get(key)

        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._renew(provider, environment, force, client_credentials, additional_data)
            )
            self._inflight[key] = task

            def _forget(done: "asyncio.Task[StoredCredential]") -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(_forget)
        else:
            logger.debug(f"Joining in-flight token refresh for {provider}/{environment}")

        # A cancelled waiter must not cancel the exchange other callers share
        return await asyncio.shield(task)

    async def _load_for_renewal(self, provider: str, environment: str, force: bool) -> Optional[StoredCredential]:
        try:
            return await self.token_store.get_active(provider, environment)
        except CredentialError as e:
            # An undecryptable row can only be replaced by a fresh grant
            if force and e.code == CREDENTIAL_UNREADABLE:
                logger.warning(f"Re-authorizing {provider}/{environment} over an unreadable credential")
                return None
            raise

    async def _renew(
        self,
        provider: str,
        environment: str,
        force: bool = False,
        client_credentials: Optional[ClientCredentials] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> StoredCredential:
        credential = await self._load_for_renewal(provider, environment, force)

        # Another worker may have finished the refresh since the caller looked
        if credential is not None and not force:
            if credential.is_invalid:
                raise _invalid_credential_error(credential)
            if not self.needs_refresh(credential):
                return credential

        token_provider = self.providers.get(provider)
        if token_provider is None:
            raise CredentialError(
                f"No token provider registered for {provider}",
                provider=provider,
                environment=environment,
            )

        try:
            grant = await self._exchange(token_provider, provider, environment, credential, force, client_credentials)
        except CredentialError as e:
            nothing_attempted = force and e.code == REAUTHORIZATION_UNAVAILABLE
            if credential is not None and not nothing_attempted:
                await self.mark_invalid(provider, environment, e.message)
            raise

        now = self._now()
        base = credential or StoredCredential(provider=provider, environment=environment, access_token="")
        if client_credentials is not None:
            base = replace(base, client_id=client_credentials.client_id, client_secret=client_credentials.client_secret)
        renewed = replace(
            base,
            id=None,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or base.refresh_token,
            token_type=grant.token_type or base.token_type,
            expires_at=now + timedelta(seconds=grant.expires_in) if grant.expires_in else None,
            validation_status=TokenValidationStatus.VALID,
            validation_error=None,
            additional_data={**(base.additional_data or {}), **(additional_data or {})},
        )
        saved = await self.token_store.save(renewed)
        logger.info(
            f"{provider}/{environment} token renewed ({mask_token(saved.access_token)}), "
            f"expires at {saved.expires_at}"
        )
        return saved

    async def _exchange(
        self,
        token_provider: OAuthTokenProvider,
        provider: str,
        environment: str,
        credential: Optional[StoredCredential],
        force: bool,
        client_credentials: Optional[ClientCredentials],
    ) -> TokenGrant:
        if force and token_provider.supports_client_credentials:
            resolved = client_credentials or await self._lookup_client_credentials(provider, environment, credential)
            if resolved is not None:
                logger.info(f"Re-authorizing {provider}/{environment} via client_credentials")
                return await token_provider.request_client_credentials(resolved, environment)

        if credential is not None and credential.refresh_token:
            logger.info(f"Refreshing {provider}/{environment} access token")
            return await token_provider.refresh(
                credential.refresh_token,
                environment,
                client_credentials or await self._lookup_client_credentials(provider, environment, credential),
            )

        if force:
            raise CredentialError(
                f"No client id/secret or refresh token available to re-authorize {provider} ({environment})",
                provider=provider,
                environment=environment,
                code=REAUTHORIZATION_UNAVAILABLE,
            )

        if token_provider.supports_client_credentials:
            resolved = await self.resolve_client_credentials(provider, environment, credential)
            logger.info(f"Requesting {provider}/{environment} token via client_credentials")
            return await token_provider.request_client_credentials(resolved, environment)

        raise CredentialError(
            f"{provider} credential for {environment} cannot be renewed without a refresh token",
            provider=provider,
            environment=environment,
        )


def _invalid_credential_error(credential: StoredCredential) -> CredentialError:
    return CredentialError(
        f"{credential.provider} credential for {credential.environment} is marked invalid; "
        "re-authorization required",
        provider=credential.provider,
        environment=credential.environment,
        details={"validation_error": credential.validation_error},
    )
