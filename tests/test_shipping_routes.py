"""
Tests for shipping API routes.
"""
import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from shipping_quotes.api.deps import get_quote_service
from shipping_quotes.core.exceptions import (
    CarrierTransientError,
    PackageValidationError,
    QuoteNotFoundError,
)
from shipping_quotes.main import app
from shipping_quotes.models.shipping_modality import ShippingModality
from shipping_quotes.models.shipping_quote import ShippingQuote
from shipping_quotes.services.shipping_types import AppliedRule, QuoteResult, ShippingOption

QUOTE_BODY = {
    "destination_postal_code": "01310-100",
    "order_value": "600.00",
    "packages": [{"width_cm": 20, "height_cm": 15, "length_cm": 30, "weight_kg": 1.2}],
}


def free_shipping_result() -> QuoteResult:
    option = ShippingOption(
        carrier_service_id=1,
        service_name="PAC",
        price=Decimal("0"),
        original_price=Decimal("25.90"),
        delivery_days_min=5,
        delivery_days_max=6,
        carrier_id=1,
        carrier_name="Correios",
        estimated_delivery_date_min=date(2024, 3, 8),
        estimated_delivery_date_max=date(2024, 3, 11),
    )
    return QuoteResult(
        options=[option],
        applied_rules=[AppliedRule(7, "free_shipping", True, True, [1])],
        environment="production",
        fingerprint="abc123",
        destination_state="SP",
        free_shipping_rule_id=7,
    )


def snapshot_row() -> ShippingQuote:
    return ShippingQuote(
        id=3,
        environment="production",
        origin_postal_code="16010000",
        destination_postal_code="01310100",
        destination_state="SP",
        order_value=Decimal("600.00"),
        products_snapshot=[{"id": None, "width_cm": 20, "height_cm": 15, "length_cm": 30, "weight_kg": 1.2}],
        options=[],
        applied_rules=[],
        free_shipping_applied=False,
        free_shipping_rule_id=None,
        production_days_added=0,
    )


@pytest.fixture
def quote_service():
    service = MagicMock()
    service.get_quote = AsyncMock(return_value=free_shipping_result())
    service.persist_quote = AsyncMock(return_value=snapshot_row())
    service.get_snapshot = AsyncMock(return_value=snapshot_row())
    service.requote = AsyncMock(return_value=snapshot_row())
    service.list_snapshots = AsyncMock(return_value={
        "data": [snapshot_row()], "current_page": 1, "per_page": 10, "total": 1, "last_page": 1,
    })
    service.resolve_environment = AsyncMock(side_effect=lambda env=None: env or "production")
    service.sync_modalities = AsyncMock(return_value=[])
    service.set_modality_active = AsyncMock()
    return service


@pytest.fixture
def client(quote_service):
    app.dependency_overrides[get_quote_service] = lambda: quote_service
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestQuoteEndpoints:

    def test_quote_returns_options_and_audit(self, client, quote_service):
        response = client.post("/shipping/quote", json=QUOTE_BODY)

        assert response.status_code == 200
        data = response.json()
        assert data["options"][0]["price"] == "0.00"
        assert data["options"][0]["original_price"] == "25.90"
        assert data["options"][0]["estimated_delivery_date_max"] == "2024-03-11"
        assert data["applied_rules"][0]["rule_id"] == 7
        assert data["free_shipping_applied"] is True
        assert data["no_service_available"] is False
        assert data["cached"] is False

        request, context, environment = quote_service.get_quote.await_args.args
        assert request.packages[0].weight_kg == 1.2
        assert context.order_value == Decimal("600.00")
        assert environment is None

    def test_package_violation_uses_error_envelope(self, client, quote_service):
        quote_service.get_quote.side_effect = PackageValidationError(
            "Package 0: height_cm 5 is below the minimum of 11 cm",
            package_index=0, field="height_cm", bound="min",
        )

        response = client.post("/shipping/quote", json=QUOTE_BODY)

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["kind"] == "validation_error"
        assert error["code"] == "PACKAGE_OUT_OF_BOUNDS"
        assert error["retryable"] is False
        assert error["details"]["package_index"] == 0
        assert error["details"]["field"] == "height_cm"

    def test_transient_carrier_error_is_retryable(self, client, quote_service):
        quote_service.get_quote.side_effect = CarrierTransientError("Aggregator unavailable", status_code=503)

        response = client.post("/shipping/quote", json=QUOTE_BODY)

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["kind"] == "carrier_unavailable"
        assert error["retryable"] is True

    def test_malformed_body(self, client):
        response = client.post("/shipping/quote", json={"destination_postal_code": "01310100"})

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "REQUEST_VALIDATION_FAILED"
        assert error["details"]["errors"]

    def test_unknown_environment_in_body(self, client):
        response = client.post("/shipping/quote", json={**QUOTE_BODY, "environment": "staging"})
        assert response.status_code == 422

    def test_unexpected_error_is_sanitized(self, client, quote_service):
        quote_service.get_quote.side_effect = RuntimeError("asyncpg password authentication failed")

        response = client.post("/shipping/quote", json=QUOTE_BODY)

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["kind"] == "internal_error"
        assert "password" not in error["message"]


class TestSnapshotEndpoints:

    def test_create_quote_snapshot(self, client, quote_service):
        response = client.post("/shipping/quotes", json=QUOTE_BODY)

        assert response.status_code == 201
        assert response.json()["id"] == 3
        quote_service.persist_quote.assert_awaited_once()

    def test_get_missing_quote(self, client, quote_service):
        quote_service.get_snapshot.side_effect = QuoteNotFoundError("Quote 404 not found")

        response = client.get("/shipping/quotes/404")

        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "not_found"

    def test_list_quotes(self, client, quote_service):
        response = client.get("/shipping/quotes", params={"page": 1, "per_page": 10})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["data"][0]["destination_postal_code"] == "01310100"

    def test_requote(self, client, quote_service):
        response = client.post("/shipping/quotes/3/requote")

        assert response.status_code == 200
        quote_service.requote.assert_awaited_once_with(3)


class TestModalityEndpoints:

    def test_update_modality(self, client, quote_service):
        quote_service.set_modality_active.return_value = ShippingModality(
            carrier_service_id=2,
            environment="sandbox",
            name="SEDEX",
            carrier_id=1,
            carrier_name="Correios",
            active=False,
        )

        response = client.patch("/shipping/modalities/sandbox/2", json={"active": False})

        assert response.status_code == 200
        assert response.json()["active"] is False
        quote_service.set_modality_active.assert_awaited_once_with(2, "sandbox", False)

    def test_sync_modalities(self, client, quote_service):
        response = client.post("/shipping/modalities/sync", json={"environment": "sandbox"})

        assert response.status_code == 200
        assert response.json() == {"environment": "sandbox", "modalities": []}
        quote_service.sync_modalities.assert_awaited_once_with("sandbox")


class TestHealth:

    def test_health_reports_unreachable_database(self, client):
        session = MagicMock()
        session.__aenter__ = AsyncMock(side_effect=OSError("connection refused"))
        session.__aexit__ = AsyncMock(return_value=False)

        with patch("shipping_quotes.main.AsyncSessionLocal", return_value=session):
            response = client.get("/health")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "unhealthy"
        assert data["quote_cache"]["backend"] == "memory"
