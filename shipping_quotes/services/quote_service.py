"""
Quote Service

High-level service that coordinates:
- Package and postal code validation
- Integration environment and origin CEP resolution
- Quote cache lookups
- Carrier rating (Melhor Envio)
- Shipping rule application
- Quote snapshots and re-quotes
- Modality sync with the aggregator
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from shipping_quotes.core.config import settings, INTEGRATION_ENVIRONMENTS
from shipping_quotes.core.exceptions import (
    CarrierAuthError,
    NoServiceAvailableError,
    QuoteNotFoundError,
    ValidationError,
)
from shipping_quotes.core.quote_cache import QuoteCache, make_fingerprint
from shipping_quotes.models.shipping_modality import ShippingModality
from shipping_quotes.models.shipping_quote import ShippingQuote
from shipping_quotes.services.melhor_envio_client import MelhorEnvioClient
from shipping_quotes.services.oauth_credentials import MELHOR_ENVIO, CredentialManager
from shipping_quotes.services.package_validation import validate_packages
from shipping_quotes.services.postal_code import PostalCodeLookup, normalize_postal_code
from shipping_quotes.services.shipping_rules import (
    Rule,
    ShippingRuleEngine,
    add_business_days,
    summarize_audit,
)
from shipping_quotes.services.shipping_store import (
    QuoteSnapshotStore,
    ShippingModalityStore,
    ShippingRuleStore,
)
from shipping_quotes.services.shipping_types import (
    AppliedRule,
    PackageSpec,
    QuoteContext,
    QuoteRequest,
    QuoteResult,
    ShippingOption,
)
from shipping_quotes.services.system_settings import SystemSettingsService

logger = logging.getLogger(__name__)


class QuoteService:
    """
    Central service for shipping quotes.

    Request-scoped: holds the request's database session. The carrier client,
    credential manager, cache and postal lookup are process-wide and injected.
    """

    def __init__(
        self,
        db: AsyncSession,
        carrier_client: MelhorEnvioClient,
        credential_manager: CredentialManager,
        cache: QuoteCache,
        postal_lookup: PostalCodeLookup,
        rule_engine: Optional[ShippingRuleEngine] = None,
        today: Callable[[], date] = date.today,
    ):
        self.db = db
        self.carrier_client = carrier_client
        self.credential_manager = credential_manager
        self.cache = cache
        self.postal_lookup = postal_lookup
        self.rule_engine = rule_engine or ShippingRuleEngine()
        self._today = today

        self.system_settings = SystemSettingsService(db)
        self.rule_store = ShippingRuleStore(db)
        self.modality_store = ShippingModalityStore(db)
        self.snapshot_store = QuoteSnapshotStore(db)

    # ==================== Resolution ====================

    async def resolve_environment(self, environment: Optional[str] = None) -> str:
        """Explicit argument, then the stored active environment, then configuration."""
        if environment:
            if environment not in INTEGRATION_ENVIRONMENTS:
                raise ValidationError(
                    f"Unknown environment {environment!r}",
                    code="INVALID_ENVIRONMENT",
                    details={"allowed": list(INTEGRATION_ENVIRONMENTS)},
                )
            return environment

        active = await self.system_settings.get_active_environment(MELHOR_ENVIO)
        return active or settings.MELHOR_ENVIO_DEFAULT_ENVIRONMENT

    async def resolve_origin_postal_code(self, environment: str, requested: Optional[str] = None) -> str:
        """Requested CEP, then the credential's cep_origem, then configuration."""
        if requested:
            return normalize_postal_code(requested, "origin_postal_code")

        additional = await self.credential_manager.get_additional_data(MELHOR_ENVIO, environment)
        stored = additional.get("cep_origem")
        if stored:
            return normalize_postal_code(stored, "origin_postal_code")

        configured = settings.melhor_envio_origin_postal_code(environment)
        if not configured:
            raise ValidationError(
                f"No origin postal code configured for {environment}",
                code="ORIGIN_POSTAL_CODE_MISSING",
            )
        return normalize_postal_code(configured, "origin_postal_code")

    async def resolve_destination_state(self, postal_code: str, state: Optional[str] = None) -> Optional[str]:
        if state:
            return state.strip().upper()[:2]
        resolved = await self.postal_lookup.resolve_state(postal_code)
        if resolved is None:
            logger.warning(f"Could not resolve state for CEP {postal_code}; state rules will not match")
        return resolved

    def _prepare(self, request: QuoteRequest, context: QuoteContext) -> Tuple[QuoteRequest, QuoteContext]:
        validate_packages(request.packages)
        destination = normalize_postal_code(request.destination_postal_code, "destination_postal_code")
        request = QuoteRequest(
            destination_postal_code=destination,
            packages=list(request.packages),
            origin_postal_code=request.origin_postal_code,
        )
        context = QuoteContext(
            order_value=context.order_value if context.order_value is not None else Decimal("0"),
            destination_state=context.destination_state,
            destination_postal_code=destination,
        )
        return request, context

    # ==================== Pipeline ====================

    async def _load_rules(self) -> List[Rule]:
        return [Rule.from_model(row) for row in await self.rule_store.list_active()]

    async def _quote_carrier(self, request: QuoteRequest, environment: str) -> List[ShippingOption]:
        try:
            return await self.carrier_client.quote(request, environment)
        except CarrierAuthError as e:
            await self.credential_manager.mark_invalid(MELHOR_ENVIO, environment, e.message)
            raise

    async def _compute(
        self,
        request: QuoteRequest,
        context: QuoteContext,
        environment: str,
        fingerprint: str,
    ) -> QuoteResult:
        request.origin_postal_code = await self.resolve_origin_postal_code(environment, request.origin_postal_code)
        context.destination_state = await self.resolve_destination_state(
            request.destination_postal_code, context.destination_state
        )

        options = await self._quote_carrier(request, environment)
        options = [option for option in options if option.price > 0]

        inactive = await self.modality_store.inactive_service_ids(environment)
        if inactive:
            options = [option for option in options if option.carrier_service_id not in inactive]

        if not options:
            logger.info(f"No shipping service available for {request.destination_postal_code} ({environment})")
            return QuoteResult(
                options=[],
                applied_rules=[],
                environment=environment,
                fingerprint=fingerprint,
                destination_state=context.destination_state,
            )

        try:
            rules = await self._load_rules()
            production_days = await self.system_settings.get_production_days_default()
            application = self.rule_engine.apply(
                options,
                context,
                rules,
                production_days_default=production_days,
                quote_date=self._today(),
            )
        except Exception as e:
            logger.warning(f"Shipping rules failed, returning carrier options unchanged: {e!r}")
            quote_date = self._today()
            for option in options:
                option.estimated_delivery_date_min = add_business_days(quote_date, option.delivery_days_min)
                option.estimated_delivery_date_max = add_business_days(quote_date, option.delivery_days_max)
            return QuoteResult(
                options=options,
                applied_rules=[],
                environment=environment,
                fingerprint=fingerprint,
                destination_state=context.destination_state,
                degraded=True,
            )

        return QuoteResult(
            options=application.options,
            applied_rules=application.applied_rules,
            environment=environment,
            fingerprint=fingerprint,
            destination_state=context.destination_state,
            production_days_added=application.production_days_added,
            free_shipping_rule_id=application.free_shipping_rule_id,
            default_days=application.default_days,
        )

    async def _run(
        self,
        request: QuoteRequest,
        context: QuoteContext,
        environment: Optional[str],
        read_cache: bool = True,
    ) -> QuoteResult:
        """Request and context must already be normalized by _prepare."""
        environment = await self.resolve_environment(environment)
        fingerprint = make_fingerprint(
            request.destination_postal_code,
            [package.to_dict() for package in request.packages],
            environment,
        )

        if read_cache:
            cached = await self.cache.get(fingerprint)
            if cached is not None:
                applied_rules = [AppliedRule.from_dict(entry) for entry in cached.applied_rules]
                default_days = cached.metadata.get("default_days", 0)
                production_days, free_shipping_rule_id = summarize_audit(applied_rules, default_days)
                return QuoteResult(
                    options=[ShippingOption.from_dict(entry) for entry in cached.options],
                    applied_rules=applied_rules,
                    environment=environment,
                    fingerprint=fingerprint,
                    cached=True,
                    destination_state=cached.metadata.get("destination_state") or context.destination_state,
                    production_days_added=production_days,
                    free_shipping_rule_id=free_shipping_rule_id,
                    default_days=default_days,
                )

        result = await self._compute(request, context, environment, fingerprint)

        # Degraded results are not cached so the next request retries the rules
        if result.options and not result.degraded:
            await self.cache.put(
                fingerprint,
                [option.to_dict() for option in result.options],
                [entry.to_dict() for entry in result.applied_rules],
                metadata={
                    "default_days": result.default_days,
                    "destination_state": result.destination_state,
                },
            )
        return result

    # ==================== Public operations ====================

    async def get_quote(
        self,
        request: QuoteRequest,
        context: QuoteContext,
        environment: Optional[str] = None,
    ) -> QuoteResult:
        """
        Quote shipping options for the packages.

        Raises:
            ValidationError: invalid package or postal code
            CredentialError: no usable aggregator credential
            CarrierTransientError / CarrierRejectionError: aggregator failures
        """
        request, context = self._prepare(request, context)
        return await self._run(request, context, environment)

    async def persist_quote(
        self,
        request: QuoteRequest,
        context: QuoteContext,
        environment: Optional[str] = None,
    ) -> ShippingQuote:
        """Quote and store a snapshot of the packages and the result."""
        request, context = self._prepare(request, context)
        environment = await self.resolve_environment(environment)
        request.origin_postal_code = await self.resolve_origin_postal_code(environment, request.origin_postal_code)
        context.destination_state = await self.resolve_destination_state(
            request.destination_postal_code, context.destination_state
        )

        result = await self._run(request, context, environment)

        snapshot = await self.snapshot_store.create(
            environment=result.environment,
            origin_postal_code=request.origin_postal_code,
            destination_postal_code=request.destination_postal_code,
            destination_state=result.destination_state,
            order_value=context.order_value,
            products_snapshot=[package.to_dict() for package in request.packages],
            options=[option.to_dict() for option in result.options],
            applied_rules=[entry.to_dict() for entry in result.applied_rules],
            free_shipping_applied=result.free_shipping_applied,
            free_shipping_rule_id=result.free_shipping_rule_id,
            production_days_added=result.production_days_added,
        )
        logger.info(f"Stored quote snapshot {snapshot.id} ({len(result.options)} options, cached={result.cached})")
        return snapshot

    async def requote(self, snapshot_id: int) -> ShippingQuote:
        """
        Re-run the full pipeline for a stored snapshot, bypassing cached reads.

        products_snapshot is reused verbatim and never modified.

        Raises:
            QuoteNotFoundError: unknown snapshot id
            NoServiceAvailableError: aggregator returned nothing (snapshot unchanged)
        """
        snapshot = await self.snapshot_store.get(snapshot_id)
        if snapshot is None:
            raise QuoteNotFoundError(f"Quote {snapshot_id} not found", details={"quote_id": snapshot_id})

        request = QuoteRequest(
            destination_postal_code=snapshot.destination_postal_code,
            packages=[PackageSpec.from_dict(entry) for entry in snapshot.products_snapshot],
            origin_postal_code=snapshot.origin_postal_code,
        )
        context = QuoteContext(
            order_value=Decimal(str(snapshot.order_value or 0)),
            destination_state=snapshot.destination_state,
        )

        request, context = self._prepare(request, context)
        result = await self._run(request, context, snapshot.environment, read_cache=False)
        if result.no_service_available:
            raise NoServiceAvailableError(
                f"No shipping service available for quote {snapshot_id}",
                details={"quote_id": snapshot_id},
            )

        snapshot.options = [option.to_dict() for option in result.options]
        snapshot.applied_rules = [entry.to_dict() for entry in result.applied_rules]
        snapshot.free_shipping_applied = result.free_shipping_applied
        snapshot.free_shipping_rule_id = result.free_shipping_rule_id
        snapshot.production_days_added = result.production_days_added
        snapshot.destination_state = result.destination_state

        snapshot = await self.snapshot_store.save(snapshot)
        logger.info(f"Re-quoted snapshot {snapshot_id} ({len(result.options)} options)")
        return snapshot

    async def get_snapshot(self, snapshot_id: int) -> ShippingQuote:
        snapshot = await self.snapshot_store.get(snapshot_id)
        if snapshot is None:
            raise QuoteNotFoundError(f"Quote {snapshot_id} not found", details={"quote_id": snapshot_id})
        return snapshot

    async def list_snapshots(self, page: int = 1, per_page: int = 10) -> Dict[str, Any]:
        rows, total = await self.snapshot_store.list(page, per_page)
        page = max(page, 1)
        per_page = max(min(per_page, 100), 1)
        return {
            "data": rows,
            "current_page": page,
            "per_page": per_page,
            "total": total,
            "last_page": max(1, -(-total // per_page)),
        }

    # ==================== Modalities ====================

    async def sync_modalities(self, environment: Optional[str] = None) -> List[ShippingModality]:
        environment = await self.resolve_environment(environment)
        try:
            services = await self.carrier_client.list_services(environment)
        except CarrierAuthError as e:
            await self.credential_manager.mark_invalid(MELHOR_ENVIO, environment, e.message)
            raise

        await self.modality_store.upsert_services(environment, services)
        return await self.modality_store.list(environment)

    async def set_modality_active(self, carrier_service_id: int, environment: str, active: bool) -> ShippingModality:
        environment = await self.resolve_environment(environment)
        modality = await self.modality_store.set_active(carrier_service_id, environment, active)
        if modality is None:
            raise QuoteNotFoundError(
                f"Modality {carrier_service_id} not found in {environment}",
                code="MODALITY_NOT_FOUND",
                details={"carrier_service_id": carrier_service_id, "environment": environment},
            )
        logger.info(f"Modality {carrier_service_id} ({environment}) active={active}")
        return modality
