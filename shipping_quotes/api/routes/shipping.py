"""
Shipping API Routes

Provides endpoints for:
- Rate quoting (transient and persisted)
- Quote history and re-quotes
- Carrier modality sync and activation

Engine errors propagate to the registered handler, which renders the
{"error": {...}} envelope with the error's status code.
"""
import logging

from fastapi import APIRouter, Depends, Query

from shipping_quotes.api.deps import get_quote_service
from shipping_quotes.services.quote_service import QuoteService
from shipping_quotes.services.shipping_types import (
    PackageSpec,
    QuoteContext,
    QuoteRequest,
    QuoteResult,
)
from shipping_quotes.schemas.shipping import (
    AppliedRuleOut,
    ModalityListResponse,
    ModalityResponse,
    ModalitySyncRequest,
    ModalityUpdate,
    QuoteRequestIn,
    QuoteResponse,
    QuoteSnapshotListResponse,
    QuoteSnapshotResponse,
    QuoteSnapshotSummary,
    ShippingOptionOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["shipping"])


# ==================== Helper Functions ====================


def to_domain(body: QuoteRequestIn):
    """Split the request body into the carrier request and the rule context."""
    request = QuoteRequest(
        destination_postal_code=body.destination_postal_code,
        packages=[PackageSpec(**package.model_dump()) for package in body.packages],
        origin_postal_code=body.origin_postal_code,
    )
    context = QuoteContext(
        order_value=body.order_value,
        destination_state=body.destination_state,
    )
    return request, context


def result_to_response(result: QuoteResult) -> QuoteResponse:
    return QuoteResponse(
        options=[ShippingOptionOut(**option.to_dict()) for option in result.options],
        applied_rules=[AppliedRuleOut(**entry.to_dict()) for entry in result.applied_rules],
        cached=result.cached,
        no_service_available=result.no_service_available,
        free_shipping_applied=result.free_shipping_applied,
        free_shipping_rule_id=result.free_shipping_rule_id,
        production_days_added=result.production_days_added,
        environment=result.environment,
        destination_state=result.destination_state,
        fingerprint=result.fingerprint,
    )


# ==================== Quote Endpoints ====================


@router.post("/quote", response_model=QuoteResponse)
async def quote(
    body: QuoteRequestIn,
    service: QuoteService = Depends(get_quote_service),
):
    """
    Get shipping options for a set of packages.

    Cached for a few minutes per destination/packages/environment.
    An empty option list is a valid answer (no_service_available=true).
    """
    request, context = to_domain(body)
    result = await service.get_quote(request, context, body.environment)
    return result_to_response(result)


@router.post("/quotes", response_model=QuoteSnapshotResponse, status_code=201)
async def create_quote(
    body: QuoteRequestIn,
    service: QuoteService = Depends(get_quote_service),
):
    """Quote and store a snapshot that can be re-quoted later."""
    request, context = to_domain(body)
    snapshot = await service.persist_quote(request, context, body.environment)
    return QuoteSnapshotResponse.model_validate(snapshot)


@router.get("/quotes", response_model=QuoteSnapshotListResponse)
async def list_quotes(
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    service: QuoteService = Depends(get_quote_service),
):
    listing = await service.list_snapshots(page, per_page)
    return QuoteSnapshotListResponse(
        data=[QuoteSnapshotSummary.model_validate(row) for row in listing["data"]],
        current_page=listing["current_page"],
        per_page=listing["per_page"],
        total=listing["total"],
        last_page=listing["last_page"],
    )


@router.get("/quotes/{quote_id}", response_model=QuoteSnapshotResponse)
async def get_quote(
    quote_id: int,
    service: QuoteService = Depends(get_quote_service),
):
    snapshot = await service.get_snapshot(quote_id)
    return QuoteSnapshotResponse.model_validate(snapshot)


@router.post("/quotes/{quote_id}/requote", response_model=QuoteSnapshotResponse)
async def requote(
    quote_id: int,
    service: QuoteService = Depends(get_quote_service),
):
    """
    Re-run the quote for a stored snapshot with current prices and rules.

    The stored packages are reused as-is; the cache is not read.
    """
    snapshot = await service.requote(quote_id)
    return QuoteSnapshotResponse.model_validate(snapshot)


# ==================== Modality Endpoints ====================


@router.post("/modalities/sync", response_model=ModalityListResponse)
async def sync_modalities(
    body: ModalitySyncRequest,
    service: QuoteService = Depends(get_quote_service),
):
    """Pull the aggregator's service list. Existing on/off choices are kept."""
    environment = await service.resolve_environment(body.environment)
    modalities = await service.sync_modalities(environment)
    return ModalityListResponse(
        environment=environment,
        modalities=[ModalityResponse.model_validate(row) for row in modalities],
    )


@router.patch("/modalities/{environment}/{service_id}", response_model=ModalityResponse)
async def update_modality(
    environment: str,
    service_id: int,
    body: ModalityUpdate,
    service: QuoteService = Depends(get_quote_service),
):
    modality = await service.set_modality_active(service_id, environment, body.active)
    return ModalityResponse.model_validate(modality)
