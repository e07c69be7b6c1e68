"""
Sieger Billing - Pricing Repository
"""

import uuid
from typing import Iterable, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.pricing import PricingList, PricingListStatus


class PricingRepository:
    """Data access for pricing lists and rules."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_active_list(self, customer_id: uuid.UUID) -> Optional[PricingList]:
        """The customer's ACTIVE pricing list with its rules, newest list first."""
        result = await self.db.execute(
            select(PricingList)
            .options(selectinload(PricingList.rules))
            .where(PricingList.customer_id == customer_id)
            .where(PricingList.status == PricingListStatus.ACTIVE)
            .order_by(PricingList.created_at.desc(), PricingList.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def customers_with_active_list(self, customer_ids: Iterable[uuid.UUID]) -> Set[uuid.UUID]:
        customer_ids = list(set(customer_ids))
        if not customer_ids:
            return set()
        result = await self.db.execute(
            select(PricingList.customer_id)
            .where(PricingList.customer_id.in_(customer_ids))
            .where(PricingList.status == PricingListStatus.ACTIVE)
            .distinct()
        )
        return set(result.scalars().all())
