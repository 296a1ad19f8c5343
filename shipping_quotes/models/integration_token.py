"""
Integration token model

OAuth credentials for external integrations, per (provider, environment).
Secrets are Fernet-encrypted at rest (see shipping_quotes.services.encryption).
A refresh inserts a new row and deactivates the previous one, so at most one
row per (provider, environment) has is_active = true.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, Index
from sqlalchemy.sql import func

from shipping_quotes.core.database import Base


class TokenValidationStatus:
    VALID = "valid"
    INVALID = "invalid"
    ERROR = "error"
    PENDING = "pending"


class IntegrationToken(Base):
    __tablename__ = "integration_tokens"
    __table_args__ = (
        Index("ix_integration_tokens_lookup", "provider", "environment", "is_active"),
    )

    id = Column(Integer, primary_key=True, index=True)

    provider = Column(String(50), nullable=False)  # melhor_envio
    environment = Column(String(20), nullable=False)  # sandbox, production
    token_type = Column(String(20), nullable=False, default="bearer")

    # Encrypted
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    client_secret_encrypted = Column(Text, nullable=True)

    client_id = Column(String(255), nullable=True)

    # Null means a static token that never expires
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # Provider-specific extras, e.g. {"cep_origem": "16010000"}
    additional_data = Column(JSON, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    validation_status = Column(String(20), nullable=False, default=TokenValidationStatus.PENDING)
    validation_error = Column(Text, nullable=True)
    last_validated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<IntegrationToken(id={self.id}, provider={self.provider}, env={self.environment}, active={self.is_active})>"
