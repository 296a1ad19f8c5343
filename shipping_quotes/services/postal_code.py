"""
Postal code (CEP) helpers and ViaCEP state lookup.

The lookup is best effort: any failure returns None and the quote proceeds
without a destination state (state-conditioned rules then never match).
"""
import logging
import re
from typing import Optional

import httpx

from shipping_quotes.core.config import settings
from shipping_quotes.core.exceptions import PostalCodeError

logger = logging.getLogger(__name__)

CEP_LENGTH = 8


def normalize_postal_code(value: Optional[str], field: str = "postal_code") -> str:
    """
    Strip formatting from a CEP ("01310-100" → "01310100").

    Raises:
        PostalCodeError: when the result is not exactly 8 digits
    """
    digits = re.sub(r"\D", "", value or "")
    if len(digits) != CEP_LENGTH:
        raise PostalCodeError(
            f"{field} must have {CEP_LENGTH} digits, got {value!r}",
            details={"field": field, "value": value},
        )
    return digits


class PostalCodeLookup:
    """Resolves a CEP to its state (UF) through ViaCEP."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.VIACEP_TIMEOUT_SECONDS)
        return self._http_client

    async def close(self):
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def resolve_state(self, postal_code: str) -> Optional[str]:
        try:
            cep = normalize_postal_code(postal_code)
        except PostalCodeError:
            return None

        client = await self._get_http_client()
        url = f"{settings.VIACEP_BASE_URL.rstrip('/')}/{cep}/json/"

        try:
            response = await client.get(url)
            if response.status_code != 200:
                logger.warning(f"ViaCEP lookup for {cep} returned {response.status_code}")
                return None
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"ViaCEP lookup for {cep} failed: {e}")
            return None

        if not isinstance(data, dict) or data.get("erro") or not data.get("uf"):
            logger.info(f"ViaCEP has no state for {cep}")
            return None

        return str(data["uf"]).strip().upper()[:2]
