"""
Sieger Billing - Credit Repository
"""

import uuid
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.credit import Credit, CreditLedger, CreditStatus
from app.utils.billing_month import BillingMonth


class CreditRepository:
    """Data access for credits and the credit ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_applicable(
        self,
        customer_id: uuid.UUID,
        billing_month: BillingMonth,
    ) -> List[Credit]:
        """
        ACTIVE credits with a balance whose window overlaps the month.

        A credit without carry-over is only usable in the month its window
        starts in. Oldest first.
        """
        result = await self.db.execute(
            select(Credit)
            .where(Credit.customer_id == customer_id)
            .where(Credit.status == CreditStatus.ACTIVE)
            .where(Credit.remaining_amount > 0)
            .where(Credit.valid_from <= billing_month.last_day)
            .where(or_(Credit.valid_to.is_(None), Credit.valid_to >= billing_month.first_day))
            .where(or_(Credit.allow_carry_over.is_(True), Credit.valid_from >= billing_month.first_day))
            .order_by(Credit.valid_from, Credit.created_at, Credit.id)
        )
        return list(result.scalars().all())

    async def list_for_customer(self, customer_id: uuid.UUID) -> List[Credit]:
        result = await self.db.execute(
            select(Credit)
            .where(Credit.customer_id == customer_id)
            .order_by(Credit.valid_from, Credit.created_at, Credit.id)
        )
        return list(result.scalars().all())

    async def get_for_update(self, credit_id: uuid.UUID) -> Optional[Credit]:
        """Re-read a credit under a row lock, discarding any cached state."""
        result = await self.db.execute(
            select(Credit)
            .where(Credit.id == credit_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def save(self, credit: Credit) -> Credit:
        await self.db.flush()
        return credit

    async def add_ledger_entry(self, entry: CreditLedger) -> CreditLedger:
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def list_ledger(self, credit_id: uuid.UUID) -> List[CreditLedger]:
        result = await self.db.execute(
            select(CreditLedger)
            .where(CreditLedger.credit_id == credit_id)
            .order_by(CreditLedger.created_at, CreditLedger.id)
        )
        return list(result.scalars().all())

    async def applied_total(self, credit_id: uuid.UUID):
        result = await self.db.execute(
            select(func.coalesce(func.sum(CreditLedger.applied_amount), 0))
            .where(CreditLedger.credit_id == credit_id)
        )
        return result.scalar_one()
