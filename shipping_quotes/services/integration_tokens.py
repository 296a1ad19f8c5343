"""
Integration token store.

SQLAlchemy-backed TokenStore for the CredentialManager. Each operation runs in
its own session and commits immediately, so a credential refresh or an
invalidation survives even when the request that triggered it fails.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_quotes.core.database import AsyncSessionLocal
from shipping_quotes.core.exceptions import CredentialError
from shipping_quotes.models.integration_token import IntegrationToken, TokenValidationStatus
from shipping_quotes.services.encryption import decrypt_secret, encrypt_secret
from shipping_quotes.services.oauth_credentials import CREDENTIAL_UNREADABLE, StoredCredential, TokenStore

logger = logging.getLogger(__name__)


def to_stored_credential(row: IntegrationToken) -> StoredCredential:
    """
    Decrypt a row.

    Raises:
        CredentialError: secrets cannot be decrypted (SECRET_KEY changed or data corrupted)
    """
    try:
        access_token = decrypt_secret(row.access_token_encrypted) or ""
        refresh_token = decrypt_secret(row.refresh_token_encrypted)
        client_secret = decrypt_secret(row.client_secret_encrypted)
    except ValueError:
        logger.error(f"Cannot decrypt {row.provider}/{row.environment} credential (id={row.id})")
        raise CredentialError(
            f"Stored {row.provider} credential for {row.environment} cannot be decrypted; "
            "re-authorize or replace it",
            provider=row.provider,
            environment=row.environment,
            code=CREDENTIAL_UNREADABLE,
        )

    return StoredCredential(
        id=row.id,
        provider=row.provider,
        environment=row.environment,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=row.expires_at,
        client_id=row.client_id,
        client_secret=client_secret,
        additional_data=dict(row.additional_data or {}),
        validation_status=row.validation_status,
        validation_error=row.validation_error,
        token_type=row.token_type or "bearer",
    )


class IntegrationTokenStore(TokenStore):

    def __init__(self, session_factory: Callable[[], AsyncSession] = AsyncSessionLocal):
        self._session_factory = session_factory

    @staticmethod
    def _active_clause(provider: str, environment: str):
        return and_(
            IntegrationToken.provider == provider,
            IntegrationToken.environment == environment,
            IntegrationToken.is_active == True,  # noqa: E712
        )

    async def get_active(self, provider: str, environment: str) -> Optional[StoredCredential]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(IntegrationToken)
                .where(self._active_clause(provider, environment))
                .order_by(IntegrationToken.created_at.desc(), IntegrationToken.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return to_stored_credential(row) if row else None

    async def save(self, credential: StoredCredential) -> StoredCredential:
        async with self._session_factory() as db:
            await db.execute(
                update(IntegrationToken)
                .where(self._active_clause(credential.provider, credential.environment))
                .values(is_active=False)
            )

            row = IntegrationToken(
                provider=credential.provider,
                environment=credential.environment,
                token_type=credential.token_type,
                access_token_encrypted=encrypt_secret(credential.access_token),
                refresh_token_encrypted=encrypt_secret(credential.refresh_token),
                client_id=credential.client_id,
                client_secret_encrypted=encrypt_secret(credential.client_secret),
                expires_at=credential.expires_at,
                additional_data=credential.additional_data or None,
                is_active=True,
                validation_status=credential.validation_status,
                validation_error=credential.validation_error,
                last_validated_at=datetime.now(timezone.utc),
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)

            logger.info(f"Stored new {credential.provider}/{credential.environment} credential (id={row.id})")
            return to_stored_credential(row)

    async def mark_invalid(self, provider: str, environment: str, reason: str) -> None:
        await self.set_validation(provider, environment, TokenValidationStatus.INVALID, reason)

    async def set_validation(
        self,
        provider: str,
        environment: str,
        status: str,
        error: Optional[str] = None,
    ) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(IntegrationToken)
                .where(self._active_clause(provider, environment))
                .values(
                    validation_status=status,
                    validation_error=error[:1000] if error else None,
                    last_validated_at=datetime.now(timezone.utc),
                )
            )
            await db.commit()
            return result.rowcount > 0

    async def deactivate(self, provider: str, environment: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(IntegrationToken)
                .where(self._active_clause(provider, environment))
                .values(is_active=False)
            )
            await db.commit()
            if result.rowcount:
                logger.info(f"Deactivated {provider}/{environment} credential")
            return result.rowcount > 0
