"""
Shipping Quotation Exception Hierarchy

Structured exception classes for the quotation engine.
All exceptions include code, message, and details for audit trail and debugging,
plus a machine-readable ``kind`` that HTTP callers can branch on.

Exception Hierarchy:
    ShippingEngineError
    ├── ValidationError
    │   ├── PackageValidationError
    │   └── PostalCodeError
    ├── CredentialError
    ├── CarrierError
    │   ├── CarrierTransientError
    │   └── CarrierRejectionError
    │       ├── CarrierAuthError
    │       └── CarrierValidationError
    ├── RuleDefinitionError
    ├── QuoteNotFoundError
    ├── CredentialNotFoundError
    └── NoServiceAvailableError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class ShippingEngineError(Exception):
    """
    Base exception for all quotation engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
    """

    kind: str = "internal_error"
    default_code: str = "SHIPPING_ENGINE_ERROR"
    http_status: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class ValidationError(ShippingEngineError):
    """Bad input (package geometry, postal code). Never retried."""
    kind = "validation_error"
    default_code = "VALIDATION_FAILED"
    http_status = 422


class PackageValidationError(ValidationError):
    """A package failed the carrier dimension/weight limits."""
    default_code = "PACKAGE_OUT_OF_BOUNDS"

    def __init__(
        self,
        message: str,
        package_index: Optional[int] = None,
        field: Optional[str] = None,
        bound: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "package_index": package_index,
            "field": field,
            "bound": bound,
        })
        self.package_index = package_index
        self.field = field
        self.bound = bound
        super().__init__(message, details=details, **kwargs)


class PostalCodeError(ValidationError):
    """Postal code (CEP) is missing or malformed."""
    default_code = "INVALID_POSTAL_CODE"


# =============================================================================
# CREDENTIAL ERRORS
# =============================================================================

class CredentialError(ShippingEngineError):
    """
    OAuth credential missing, refresh failed, or credential already marked invalid.

    Not retried automatically: the stored credential is flagged invalid so later
    calls fail fast until an administrator re-authorizes.
    """
    kind = "credential_error"
    default_code = "CREDENTIAL_UNAVAILABLE"
    http_status = 502

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        environment: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "provider": provider,
            "environment": environment,
        })
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# CARRIER ERRORS
# =============================================================================

class CarrierError(ShippingEngineError):
    """Base exception for shipping aggregator failures."""
    kind = "carrier_error"
    default_code = "CARRIER_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        self.status_code = status_code
        super().__init__(message, details=details, **kwargs)


class CarrierTransientError(CarrierError):
    """Timeout, network failure, 5xx or throttling. Safe for the caller to retry with backoff."""
    kind = "carrier_unavailable"
    default_code = "CARRIER_UNAVAILABLE"
    http_status = 503
    retryable = True


class CarrierRejectionError(CarrierError):
    """The aggregator refused the request (4xx other than throttling)."""
    kind = "carrier_rejected"
    default_code = "CARRIER_REJECTED"


class CarrierAuthError(CarrierRejectionError):
    """401/403 from the aggregator: the stored credential is bad."""
    kind = "carrier_auth_rejected"
    default_code = "CARRIER_AUTH_REJECTED"


class CarrierValidationError(CarrierRejectionError):
    """422 from the aggregator: the request itself is malformed."""
    kind = "carrier_validation_rejected"
    default_code = "CARRIER_VALIDATION_REJECTED"


# =============================================================================
# RULES / QUOTES
# =============================================================================

class RuleDefinitionError(ShippingEngineError):
    """A stored shipping rule cannot be interpreted."""
    kind = "rule_definition_error"
    default_code = "INVALID_SHIPPING_RULE"

    def __init__(self, message: str, rule_id: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["rule_id"] = rule_id
        super().__init__(message, details=details, **kwargs)


class QuoteNotFoundError(ShippingEngineError):
    """Quote snapshot does not exist."""
    kind = "not_found"
    default_code = "QUOTE_NOT_FOUND"
    http_status = 404


class NoServiceAvailableError(ShippingEngineError):
    """The aggregator returned no usable shipping option."""
    kind = "no_service_available"
    default_code = "NO_SERVICE_AVAILABLE"
    http_status = 404


class CredentialNotFoundError(ShippingEngineError):
    """No active credential stored for the provider/environment."""
    kind = "not_found"
    default_code = "CREDENTIAL_NOT_FOUND"
    http_status = 404
