"""
Tests for the Melhor Envio API client, its OAuth provider and the ViaCEP lookup.
"""
import json
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import httpx

from shipping_quotes.core.exceptions import (
    CarrierAuthError,
    CarrierRejectionError,
    CarrierTransientError,
    CarrierValidationError,
    CredentialError,
    PostalCodeError,
)
from shipping_quotes.services.melhor_envio_client import MelhorEnvioClient, parse_option
from shipping_quotes.services.melhor_envio_oauth import MelhorEnvioOAuthProvider
from shipping_quotes.services.oauth_credentials import ClientCredentials
from shipping_quotes.services.postal_code import PostalCodeLookup, normalize_postal_code
from shipping_quotes.services.shipping_types import PackageSpec, QuoteRequest

CALCULATE_RESPONSE = [
    {
        "id": 1,
        "name": "PAC",
        "price": "25.90",
        "currency": "R$",
        "delivery_time": 6,
        "delivery_range": {"min": 5, "max": 6},
        "packages": [{"price": "25.90"}],
        "company": {"id": 1, "name": "Correios"},
    },
    {
        "id": 2,
        "name": "SEDEX",
        "price": "48.10",
        "delivery_time": 2,
        "company": {"id": 1, "name": "Correios"},
    },
    {"id": 3, "name": ".Package", "error": "Transportadora não atende este trecho."},
    {"id": 4, "name": "Mini Envios", "price": "0.00", "delivery_time": 8},
]


def make_client(handler, token: str = "tok-123"):
    credential_manager = MagicMock()
    credential_manager.get_valid_token = AsyncMock(return_value=token)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MelhorEnvioClient(credential_manager, http_client=http_client), credential_manager


def quote_request() -> QuoteRequest:
    return QuoteRequest(
        destination_postal_code="01310100",
        origin_postal_code="16010000",
        packages=[PackageSpec(width_cm=20, height_cm=15, length_cm=30, weight_kg=1.2, insurance_value=100)],
    )


class TestParseOption:

    def test_delivery_range_preferred_over_delivery_time(self):
        option = parse_option(CALCULATE_RESPONSE[0])
        assert option.price == Decimal("25.90")
        assert (option.delivery_days_min, option.delivery_days_max) == (5, 6)
        assert option.carrier_name == "Correios"
        assert option.package_count == 1

    def test_delivery_time_fallback(self):
        option = parse_option(CALCULATE_RESPONSE[1])
        assert (option.delivery_days_min, option.delivery_days_max) == (2, 2)

    def test_error_and_free_entries_are_dropped(self):
        assert parse_option(CALCULATE_RESPONSE[2]) is None
        assert parse_option(CALCULATE_RESPONSE[3]) is None
        assert parse_option({"id": 5, "price": "abc"}) is None


class TestMelhorEnvioClient:

    @pytest.mark.asyncio
    async def test_quote_posts_packages_with_bearer_token(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json=CALCULATE_RESPONSE)

        client, credential_manager = make_client(handler)

        options = await client.quote(quote_request(), "sandbox")

        assert [o.carrier_service_id for o in options] == [1, 2]
        assert captured["url"] == "https://sandbox.melhorenvio.com.br/api/v2/me/shipment/calculate"
        assert captured["auth"] == "Bearer tok-123"
        assert captured["body"]["from"] == {"postal_code": "16010000"}
        assert captured["body"]["to"] == {"postal_code": "01310100"}
        assert captured["body"]["products"][0]["weight"] == 1.2
        credential_manager.get_valid_token.assert_awaited_once_with("melhor_envio", "sandbox")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error_class", [
        (401, CarrierAuthError),
        (403, CarrierAuthError),
        (422, CarrierValidationError),
        (400, CarrierRejectionError),
        (429, CarrierTransientError),
        (500, CarrierTransientError),
        (503, CarrierTransientError),
    ])
    async def test_status_classification(self, status, error_class):
        client, _ = make_client(lambda request: httpx.Response(status, json={"message": "nope"}))

        with pytest.raises(error_class) as exc_info:
            await client.quote(quote_request(), "production")

        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_validation_rejection_is_not_retryable(self):
        client, _ = make_client(lambda request: httpx.Response(422, json={"message": "invalid", "errors": {"to": ["bad"]}}))

        with pytest.raises(CarrierValidationError) as exc_info:
            await client.quote(quote_request(), "production")

        assert exc_info.value.retryable is False
        assert exc_info.value.details["errors"] == {"to": ["bad"]}

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client, _ = make_client(handler)

        with pytest.raises(CarrierTransientError) as exc_info:
            await client.quote(quote_request(), "production")

        assert exc_info.value.code == "CARRIER_TIMEOUT"
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client, _ = make_client(handler)

        with pytest.raises(CarrierTransientError):
            await client.quote(quote_request(), "production")

    @pytest.mark.asyncio
    async def test_list_services(self):
        services_payload = [
            {"id": 1, "name": "PAC", "company": {"id": 1, "name": "Correios"}},
            {"id": 17, "name": "Mini Envios", "company": {"id": 1, "name": "Correios"}},
            {"name": "no id"},
        ]
        client, _ = make_client(lambda request: httpx.Response(200, json=services_payload))

        services = await client.list_services("production")

        assert [s.carrier_service_id for s in services] == [1, 17]
        assert services[0].carrier_name == "Correios"

    @pytest.mark.asyncio
    async def test_check_token_uses_given_token(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json=[])

        client, credential_manager = make_client(handler)

        await client.check_token("sandbox", "pasted-token")

        assert captured["url"] == "https://sandbox.melhorenvio.com.br/api/v2/me/shipment/services"
        assert captured["auth"] == "Bearer pasted-token"
        credential_manager.get_valid_token.assert_not_awaited()


class TestMelhorEnvioOAuthProvider:

    @pytest.mark.asyncio
    async def test_client_credentials_grant(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = request.content.decode()
            return httpx.Response(200, json={"access_token": "abc", "expires_in": 3600, "token_type": "Bearer"})

        provider = MelhorEnvioOAuthProvider(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        grant = await provider.request_client_credentials(ClientCredentials("id", "secret"), "sandbox")

        assert grant.access_token == "abc"
        assert grant.expires_in == 3600
        assert grant.refresh_token is None
        assert captured["url"] == "https://sandbox.melhorenvio.com.br/oauth/token"
        assert captured["auth"].startswith("Basic ")
        assert "grant_type=client_credentials" in captured["body"]

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token(self):
        provider = MelhorEnvioOAuthProvider(http_client=httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"access_token": "new", "expires_in": 60})
        )))

        grant = await provider.refresh("old-refresh", "production")

        assert grant.access_token == "new"
        assert grant.refresh_token == "old-refresh"

    @pytest.mark.asyncio
    async def test_rejected_exchange_raises_credential_error(self):
        provider = MelhorEnvioOAuthProvider(http_client=httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(401, json={"error": "invalid_client"})
        )))

        with pytest.raises(CredentialError) as exc_info:
            await provider.refresh("old-refresh", "production")

        assert exc_info.value.code == "TOKEN_EXCHANGE_FAILED"
        assert exc_info.value.details["status_code"] == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(200, text="<html>maintenance</html>"),
        httpx.Response(200, json=[{"access_token": "abc"}]),
        httpx.Response(200, json={"access_token": "abc", "expires_in": "soon"}),
    ])
    async def test_malformed_token_response_raises_credential_error(self, response):
        provider = MelhorEnvioOAuthProvider(http_client=httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: response
        )))

        with pytest.raises(CredentialError) as exc_info:
            await provider.request_client_credentials(ClientCredentials("id", "secret"), "production")

        assert exc_info.value.code == "TOKEN_EXCHANGE_FAILED"


class TestPostalCode:

    def test_normalize(self):
        assert normalize_postal_code("01310-100") == "01310100"

    def test_normalize_rejects_short_codes(self):
        with pytest.raises(PostalCodeError):
            normalize_postal_code("1234")

    @pytest.mark.asyncio
    async def test_resolve_state(self):
        lookup = PostalCodeLookup(http_client=httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"cep": "01310-100", "uf": "sp"})
        )))
        assert await lookup.resolve_state("01310-100") == "SP"

    @pytest.mark.asyncio
    async def test_resolve_state_not_found(self):
        lookup = PostalCodeLookup(http_client=httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"erro": True})
        )))
        assert await lookup.resolve_state("99999999") is None

    @pytest.mark.asyncio
    async def test_resolve_state_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        lookup = PostalCodeLookup(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        assert await lookup.resolve_state("01310100") is None
