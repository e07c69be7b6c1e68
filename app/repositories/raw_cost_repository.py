"""
Sieger Billing - Raw Cost Repository
"""

import uuid
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.raw_cost import RawCostEntry, RawCostIngestionBatch
from app.utils.billing_month import BillingMonth
from app.utils.money import to_decimal


class RawCostRepository:
    """Data access for ingestion batches and their cost rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_batch(self, batch_id: uuid.UUID) -> Optional[RawCostIngestionBatch]:
        return await self.db.get(RawCostIngestionBatch, batch_id)

    async def find_batch(self, checksum: str, month: str, source: str) -> Optional[RawCostIngestionBatch]:
        result = await self.db.execute(
            select(RawCostIngestionBatch)
            .where(RawCostIngestionBatch.checksum == checksum)
            .where(RawCostIngestionBatch.month == month)
            .where(RawCostIngestionBatch.source == source)
        )
        return result.scalar_one_or_none()

    async def add_batch(
        self,
        batch: RawCostIngestionBatch,
        entries: Iterable[RawCostEntry],
    ) -> RawCostIngestionBatch:
        self.db.add(batch)
        await self.db.flush()
        for entry in entries:
            entry.ingestion_batch_id = batch.id
            self.db.add(entry)
        await self.db.flush()
        return batch

    async def list_entries(
        self,
        project_ids: List[str],
        billing_month: BillingMonth,
        ingestion_batch_id: Optional[uuid.UUID] = None,
    ) -> List[RawCostEntry]:
        """
        Cost rows for the given projects.

        With a batch id the batch is the whole selector; otherwise rows whose
        usage started inside the billing month are returned.
        """
        if not project_ids:
            return []

        query = select(RawCostEntry).where(RawCostEntry.project_id.in_(project_ids))
        if ingestion_batch_id is not None:
            query = query.where(RawCostEntry.ingestion_batch_id == ingestion_batch_id)
        else:
            query = (
                query
                .where(RawCostEntry.usage_start_time >= billing_month.start)
                .where(RawCostEntry.usage_start_time < billing_month.end)
            )
        query = query.order_by(RawCostEntry.usage_start_time, RawCostEntry.id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def cost_by_project(self, billing_month: BillingMonth) -> List[Tuple[str, int, Decimal]]:
        """(project_id, row count, cost sum) for usage that started in the month."""
        result = await self.db.execute(
            select(RawCostEntry.project_id, func.count(RawCostEntry.id), func.sum(RawCostEntry.cost))
            .where(RawCostEntry.usage_start_time >= billing_month.start)
            .where(RawCostEntry.usage_start_time < billing_month.end)
            .group_by(RawCostEntry.project_id)
            .order_by(RawCostEntry.project_id)
        )
        return [(project_id, count, to_decimal(cost)) for project_id, count, cost in result.all()]

    async def cost_by_sku(self, billing_month: BillingMonth) -> List[Tuple[str, str, Decimal]]:
        """(sku_id, service_id, cost sum) for usage that started in the month."""
        result = await self.db.execute(
            select(RawCostEntry.sku_id, RawCostEntry.service_id, func.sum(RawCostEntry.cost))
            .where(RawCostEntry.usage_start_time >= billing_month.start)
            .where(RawCostEntry.usage_start_time < billing_month.end)
            .group_by(RawCostEntry.sku_id, RawCostEntry.service_id)
            .order_by(RawCostEntry.sku_id, RawCostEntry.service_id)
        )
        return [(sku_id, service_id, to_decimal(cost)) for sku_id, service_id, cost in result.all()]
