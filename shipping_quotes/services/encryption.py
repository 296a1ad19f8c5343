"""
Encryption of integration secrets at rest.

Access tokens, refresh tokens and client secrets are stored with Fernet
(AES-128-CBC + HMAC) using a key derived from SECRET_KEY.
"""
import base64
import logging
import re
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from shipping_quotes.core.config import settings

logger = logging.getLogger(__name__)

_ENCRYPTION_SALT = b"shipping_quotes_integration_tokens_v1"

# Cached Fernet instance
_fernet: Optional[Fernet] = None


def _get_fernet() -> Fernet:
    """Get or create Fernet instance with derived key."""
    global _fernet

    if _fernet is None:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_ENCRYPTION_SALT,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(settings.SECRET_KEY.encode()))
        _fernet = Fernet(key)

    return _fernet


def encrypt_secret(plaintext: Optional[str]) -> Optional[str]:
    """
    Encrypt a token or client secret.

    Returns None for empty input so nullable columns stay null.
    """
    if not plaintext:
        return None

    try:
        return _get_fernet().encrypt(plaintext.encode()).decode()
    except Exception as e:
        logger.error(f"Encryption failed: {e}")
        raise ValueError("Failed to encrypt secret")


def decrypt_secret(ciphertext: Optional[str]) -> Optional[str]:
    if not ciphertext:
        return None

    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.error("Decryption failed: Invalid token (wrong key or corrupted data)")
        raise ValueError("Failed to decrypt secret - invalid token")


def mask_token(token: Optional[str]) -> str:
    """Mask a token for display (e.g., eyJ0***a1b2)."""
    if not token:
        return "***"
    if len(token) <= 8:
        return "*" * len(token)
    return f"{token[:4]}***{token[-4:]}"


def sanitize_for_logging(text: str, max_length: int = 500) -> str:
    """
    Remove credentials from text for safe logging.

    Args:
        text: Text that may contain tokens or secrets
        max_length: Maximum length of result

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ""

    sanitized = text[:max_length]

    patterns = [
        (r'(Bearer\s+)[A-Za-z0-9\-._~+/]+=*', r'\1[TOKEN]'),
        (r'(Basic\s+)[A-Za-z0-9+/]+=*', r'\1[CREDENTIALS]'),
        (r'("?(?:access_token|refresh_token|client_secret)"?\s*[:=]\s*"?)[^",&\s]+', r'\1[REDACTED]'),
        # JWTs outside a header
        (r'\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*', '[JWT]'),
    ]

    for pattern, replacement in patterns:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)

    return sanitized
