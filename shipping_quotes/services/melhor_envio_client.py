"""
Melhor Envio API client (shipping aggregator).

Implements the two calls the quotation engine needs:
- Service listing (carrier modalities)
- Rate calculation for a set of packages

Every call fetches its bearer token from the CredentialManager, so expired
tokens are renewed transparently. Failures are classified, never retried here:

    timeout / network / 5xx / 429  → CarrierTransientError (retryable)
    401 / 403                      → CarrierAuthError
    422                            → CarrierValidationError
    other 4xx                      → CarrierRejectionError
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from shipping_quotes.core.config import settings
from shipping_quotes.core.exceptions import (
    CarrierAuthError,
    CarrierRejectionError,
    CarrierTransientError,
    CarrierValidationError,
)
from shipping_quotes.services.encryption import sanitize_for_logging
from shipping_quotes.services.melhor_envio_oauth import melhor_envio_base_url
from shipping_quotes.services.oauth_credentials import MELHOR_ENVIO, CredentialManager
from shipping_quotes.services.shipping_types import (
    CarrierServiceInfo,
    QuoteRequest,
    ShippingOption,
    to_decimal,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v2/me"
CALCULATE_PATH = f"{API_PREFIX}/shipment/calculate"
SERVICES_PATH = f"{API_PREFIX}/shipment/services"


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_option(data: Dict[str, Any]) -> Optional[ShippingOption]:
    """
    Convert one calculate entry into a ShippingOption.

    Returns None for entries the aggregator flagged with an error, or whose
    price is missing, unparseable or not positive.
    """
    if data.get("error"):
        return None

    service_id = _to_int(data.get("id"))
    if service_id is None:
        return None

    price = to_decimal(data.get("price"))
    if price is None or price <= 0:
        return None

    delivery_time = _to_int(data.get("delivery_time")) or 0
    delivery_range = data.get("delivery_range") or {}
    days_min = _to_int(delivery_range.get("min"))
    days_max = _to_int(delivery_range.get("max"))

    company = data.get("company") or {}
    packages = data.get("packages")
    if isinstance(packages, list):
        package_count = len(packages) or 1
    else:
        package_count = _to_int(packages) or 1

    return ShippingOption(
        carrier_service_id=service_id,
        service_name=str(data.get("name") or ""),
        carrier_id=_to_int(company.get("id")),
        carrier_name=company.get("name"),
        price=price,
        currency=data.get("currency") or "BRL",
        delivery_days_min=days_min if days_min is not None else delivery_time,
        delivery_days_max=days_max if days_max is not None else delivery_time,
        package_count=package_count,
    )


def parse_service(data: Dict[str, Any]) -> Optional[CarrierServiceInfo]:
    service_id = _to_int(data.get("id"))
    if service_id is None:
        return None

    company = data.get("company")
    if isinstance(company, dict):
        carrier_id = _to_int(company.get("id"))
        carrier_name = company.get("name")
    else:
        carrier_id = _to_int(data.get("company_id"))
        carrier_name = data.get("company_name")

    return CarrierServiceInfo(
        carrier_service_id=service_id,
        name=str(data.get("name") or ""),
        carrier_id=carrier_id,
        carrier_name=str(carrier_name) if carrier_name is not None else None,
    )


class MelhorEnvioClient:
    """
    Melhor Envio API client authenticated through the CredentialManager.
    """

    def __init__(
        self,
        credential_manager: CredentialManager,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.credential_manager = credential_manager
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

    async def _make_request(
        self,
        method: str,
        path: str,
        environment: str,
        data: Optional[Dict] = None,
        token: Optional[str] = None,
    ) -> Any:
        """Make authenticated API request. An explicit token bypasses the credential manager."""
        if token is None:
            token = await self.credential_manager.get_valid_token(MELHOR_ENVIO, environment)
        client = await self._get_http_client()
        url = f"{melhor_envio_base_url(environment)}{path}"

        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": settings.MELHOR_ENVIO_USER_AGENT,
        }

        try:
            if method.upper() == "GET":
                response = await client.get(url, headers=headers)
            elif method.upper() == "POST":
                response = await client.post(url, headers=headers, json=data)
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")
        except httpx.TimeoutException as e:
            logger.error(f"Melhor Envio {method} {path} timed out ({environment}): {e}")
            raise CarrierTransientError(f"Timeout calling shipping aggregator: {e}", code="CARRIER_TIMEOUT")
        except httpx.RequestError as e:
            logger.error(f"Melhor Envio {method} {path} failed ({environment}): {e}")
            raise CarrierTransientError(f"Network error calling shipping aggregator: {e}", code="CARRIER_NETWORK_ERROR")

        logger.debug(f"Melhor Envio {method} {path} -> {response.status_code}")

        if response.status_code >= 400:
            self._raise_for_status(response, path)

        try:
            return response.json()
        except ValueError:
            raise CarrierTransientError(
                "Shipping aggregator returned a non-JSON body",
                status_code=response.status_code,
                code="CARRIER_BAD_RESPONSE",
            )

    def _raise_for_status(self, response: httpx.Response, path: str) -> None:
        status = response.status_code
        try:
            error_data = response.json()
        except ValueError:
            error_data = {"raw": response.text[:500]}

        message = "Shipping aggregator error"
        if isinstance(error_data, dict):
            message = error_data.get("message") or error_data.get("error") or message

        logger.error(f"Melhor Envio error on {path}: {status} - {sanitize_for_logging(str(message))}")

        details = {"response": error_data if isinstance(error_data, dict) else {"raw": error_data}}
        if status in (401, 403):
            raise CarrierAuthError(f"Aggregator rejected credentials: {message}", status_code=status, details=details)
        if status == 422:
            errors = error_data.get("errors") if isinstance(error_data, dict) else None
            raise CarrierValidationError(
                f"Aggregator rejected the request: {message}",
                status_code=status,
                details={"errors": errors, **details},
            )
        if status == 429 or status >= 500:
            raise CarrierTransientError(f"Aggregator unavailable: {message}", status_code=status, details=details)
        raise CarrierRejectionError(f"Aggregator rejected the request: {message}", status_code=status, details=details)

    # ==================== Services ====================

    async def check_token(self, environment: str, token: str) -> None:
        """
        Authenticated read with the given token, used to validate a stored credential.

        Raises:
            CarrierAuthError: the aggregator rejected the token
            CarrierTransientError / CarrierRejectionError: any other failure
        """
        await self._make_request("GET", SERVICES_PATH, environment, token=token)
        logger.info(f"Melhor Envio token accepted ({environment})")

    async def list_services(self, environment: str) -> List[CarrierServiceInfo]:
        payload = await self._make_request("GET", SERVICES_PATH, environment)
        if not isinstance(payload, list):
            raise CarrierRejectionError(
                "Unexpected services response from aggregator",
                code="CARRIER_BAD_RESPONSE",
            )

        services = []
        for entry in payload:
            service = parse_service(entry) if isinstance(entry, dict) else None
            if service is not None:
                services.append(service)
        logger.info(f"Melhor Envio listed {len(services)} services ({environment})")
        return services

    # ==================== Rating ====================

    async def quote(self, request: QuoteRequest, environment: str) -> List[ShippingOption]:
        """
        Rate all packages in one calculate call.

        Returns an empty list when the aggregator has no usable option.
        """
        origin = request.origin_postal_code or settings.melhor_envio_origin_postal_code(environment)
        body = {
            "from": {"postal_code": origin},
            "to": {"postal_code": request.destination_postal_code},
            "products": [
                {
                    "id": package.id or str(index + 1),
                    "width": package.width_cm,
                    "height": package.height_cm,
                    "length": package.length_cm,
                    "weight": package.weight_kg,
                    "insurance_value": package.insurance_value,
                    "quantity": package.quantity,
                }
                for index, package in enumerate(request.packages)
            ],
        }

        logger.info(
            f"Melhor Envio quote {origin} -> {request.destination_postal_code} "
            f"({len(request.packages)} packages, {environment})"
        )
        payload = await self._make_request("POST", CALCULATE_PATH, environment, data=body)
        if not isinstance(payload, list):
            raise CarrierRejectionError(
                "Unexpected calculate response from aggregator",
                code="CARRIER_BAD_RESPONSE",
            )

        options = []
        for entry in payload:
            option = parse_option(entry) if isinstance(entry, dict) else None
            if option is not None:
                options.append(option)

        dropped = len(payload) - len(options)
        if dropped:
            logger.debug(f"Dropped {dropped} unavailable options from aggregator response")
        return options
