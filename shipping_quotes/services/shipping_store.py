"""
Persistence for shipping rules, modalities and quote snapshots.

All stores work on the request session; the caller's unit of work
(get_db) commits.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_quotes.models.shipping_modality import ShippingModality
from shipping_quotes.models.shipping_quote import ShippingQuote
from shipping_quotes.models.shipping_rule import ShippingRule
from shipping_quotes.services.shipping_types import CarrierServiceInfo

logger = logging.getLogger(__name__)


class ShippingRuleStore:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_active(self) -> List[ShippingRule]:
        result = await self.db.execute(
            select(ShippingRule)
            .where(ShippingRule.active == True)  # noqa: E712
            .order_by(ShippingRule.priority.asc(), ShippingRule.created_at.asc(), ShippingRule.id.asc())
        )
        return list(result.scalars().all())


class ShippingModalityStore:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list(self, environment: str) -> List[ShippingModality]:
        result = await self.db.execute(
            select(ShippingModality)
            .where(ShippingModality.environment == environment)
            .order_by(ShippingModality.carrier_name.asc().nulls_last(), ShippingModality.name.asc())
        )
        return list(result.scalars().all())

    async def inactive_service_ids(self, environment: str) -> Set[int]:
        result = await self.db.execute(
            select(ShippingModality.carrier_service_id).where(
                and_(
                    ShippingModality.environment == environment,
                    ShippingModality.active == False,  # noqa: E712
                )
            )
        )
        return set(result.scalars().all())

    async def upsert_services(
        self,
        environment: str,
        services: Sequence[CarrierServiceInfo],
    ) -> List[ShippingModality]:
        """
        Insert new services as active and refresh names of known ones.

        The `active` flag of services already stored is never touched.
        """
        ids = [service.carrier_service_id for service in services]
        existing: Dict[int, ShippingModality] = {}
        if ids:
            result = await self.db.execute(
                select(ShippingModality).where(
                    and_(
                        ShippingModality.environment == environment,
                        ShippingModality.carrier_service_id.in_(ids),
                    )
                )
            )
            existing = {row.carrier_service_id: row for row in result.scalars().all()}

        created = 0
        for service in services:
            row = existing.get(service.carrier_service_id)
            if row is None:
                row = ShippingModality(
                    carrier_service_id=service.carrier_service_id,
                    environment=environment,
                    name=service.name,
                    carrier_id=service.carrier_id,
                    carrier_name=service.carrier_name,
                    active=True,
                )
                self.db.add(row)
                existing[service.carrier_service_id] = row
                created += 1
            else:
                row.name = service.name
                row.carrier_id = service.carrier_id
                row.carrier_name = service.carrier_name

        await self.db.flush()
        logger.info(f"Synced {len(services)} modalities ({environment}): {created} new")
        return [existing[service_id] for service_id in dict.fromkeys(ids)]

    async def set_active(self, carrier_service_id: int, environment: str, active: bool) -> Optional[ShippingModality]:
        result = await self.db.execute(
            select(ShippingModality).where(
                and_(
                    ShippingModality.carrier_service_id == carrier_service_id,
                    ShippingModality.environment == environment,
                )
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        row.active = active
        await self.db.flush()
        return row


class QuoteSnapshotStore:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, **fields: Any) -> ShippingQuote:
        snapshot = ShippingQuote(**fields)
        self.db.add(snapshot)
        await self.db.flush()
        await self.db.refresh(snapshot)
        return snapshot

    async def get(self, snapshot_id: int) -> Optional[ShippingQuote]:
        result = await self.db.execute(
            select(ShippingQuote).where(ShippingQuote.id == snapshot_id)
        )
        return result.scalar_one_or_none()

    async def list(self, page: int = 1, per_page: int = 10) -> Tuple[List[ShippingQuote], int]:
        page = max(page, 1)
        per_page = max(min(per_page, 100), 1)

        total_result = await self.db.execute(select(func.count(ShippingQuote.id)))
        total = total_result.scalar() or 0

        result = await self.db.execute(
            select(ShippingQuote)
            .order_by(ShippingQuote.created_at.desc(), ShippingQuote.id.desc())
            .limit(per_page)
            .offset((page - 1) * per_page)
        )
        return list(result.scalars().all()), total

    async def save(self, snapshot: ShippingQuote) -> ShippingQuote:
        await self.db.flush()
        await self.db.refresh(snapshot)
        return snapshot
