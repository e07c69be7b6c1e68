"""
Sieger Billing - Special Rule Repository
"""

import uuid
from typing import Iterable, List

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.special_rule import RuleLifecycle, SpecialRule, SpecialRuleEffectLedger
from app.utils.billing_month import BillingMonth


class SpecialRuleRepository:
    """Data access for special rules and their effect ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_applicable(
        self,
        customer_id: uuid.UUID,
        billing_month: BillingMonth,
    ) -> List[SpecialRule]:
        """
        Enabled ACTIVE rules for the customer plus global rules whose
        effective window overlaps the month, in evaluation order.
        """
        result = await self.db.execute(
            select(SpecialRule)
            .where(or_(SpecialRule.customer_id == customer_id, SpecialRule.customer_id.is_(None)))
            .where(SpecialRule.enabled.is_(True))
            .where(SpecialRule.lifecycle == RuleLifecycle.ACTIVE)
            .where(
                or_(
                    SpecialRule.effective_start.is_(None),
                    SpecialRule.effective_start <= billing_month.last_day,
                )
            )
            .where(
                or_(
                    SpecialRule.effective_end.is_(None),
                    SpecialRule.effective_end >= billing_month.first_day,
                )
            )
            .order_by(SpecialRule.priority, SpecialRule.created_at, SpecialRule.id)
        )
        return list(result.scalars().all())

    async def add_effects(self, effects: Iterable[SpecialRuleEffectLedger]) -> None:
        self.db.add_all(list(effects))
        await self.db.flush()

    async def list_effects(self, invoice_run_id: uuid.UUID) -> List[SpecialRuleEffectLedger]:
        result = await self.db.execute(
            select(SpecialRuleEffectLedger)
            .where(SpecialRuleEffectLedger.invoice_run_id == invoice_run_id)
            .order_by(SpecialRuleEffectLedger.created_at, SpecialRuleEffectLedger.id)
        )
        return list(result.scalars().all())
