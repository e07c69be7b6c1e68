"""
Sieger Billing - Credits Engine

Consumes customer credits against an invoice's priced total.

Features:
- Eligible credits: ACTIVE, balance left, window overlapping the billing
  month; without carry-over only in the month the credit starts
- Oldest first (valid_from ascending)
- One CreditLedger row per application, with the balance before it
- Each credit is re-read under a row lock before its balance is decremented

The engine never commits. Callers run apply_credits_to_invoice inside
scoped_transaction() together with the invoice it applies to, so the ledger
rows and the balance decrements commit or roll back as one unit.
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from app.models.credit import Credit, CreditLedger, CreditStatus
from app.repositories.credit_repository import CreditRepository
from app.utils.billing_month import BillingMonth
from app.utils.money import ZERO, money_str, quantize_money

logger = logging.getLogger(__name__)


@dataclass
class CreditApplication:
    """One credit applied to one invoice."""
    credit_id: uuid.UUID
    credit_type: str
    applied_amount: Decimal
    credit_remaining_before: Decimal
    credit_remaining_after: Decimal
    ledger_entry_id: uuid.UUID

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credit_id": str(self.credit_id),
            "credit_type": self.credit_type,
            "applied_amount": money_str(self.applied_amount),
            "credit_remaining_before": money_str(self.credit_remaining_before),
            "credit_remaining_after": money_str(self.credit_remaining_after),
        }


@dataclass
class CreditApplicationResult:
    total_credits_applied: Decimal = ZERO
    credits_used: List[CreditApplication] = field(default_factory=list)
    final_amount: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_credits_applied": money_str(self.total_credits_applied),
            "credits_used": [application.to_dict() for application in self.credits_used],
        }


class CreditsEngine:
    """Credit selection and FIFO consumption."""

    def __init__(self, credits: CreditRepository):
        self.credits = credits

    async def load_applicable_credits(
        self,
        customer_id: uuid.UUID,
        billing_month: BillingMonth,
    ) -> List[Credit]:
        return await self.credits.list_applicable(customer_id, billing_month)

    async def apply_credits_to_invoice(
        self,
        customer_id: uuid.UUID,
        invoice_id: uuid.UUID,
        invoice_run_id: uuid.UUID,
        invoice_amount: Decimal,
        billing_month: BillingMonth,
        currency: Optional[str] = None,
    ) -> CreditApplicationResult:
        """
        Apply eligible credits to the invoice, oldest first.

        When `currency` is given only credits in that currency are used.
        Returns the total applied, one entry per ledger row written and the
        amount left to pay.
        """
        remaining_invoice_amount = quantize_money(invoice_amount)
        result = CreditApplicationResult(final_amount=remaining_invoice_amount)
        if remaining_invoice_amount <= ZERO:
            return result

        candidates = await self.load_applicable_credits(customer_id, billing_month)
        for candidate in candidates:
            if remaining_invoice_amount <= ZERO:
                break
            if currency is not None and candidate.currency != currency:
                continue

            credit = await self.credits.get_for_update(candidate.id)
            if credit is None or credit.status != CreditStatus.ACTIVE:
                continue

            remaining_before = credit.remaining_amount
            amount_to_apply = min(remaining_before, remaining_invoice_amount)
            if amount_to_apply <= ZERO:
                continue

            ledger_entry = await self.credits.add_ledger_entry(
                CreditLedger(
                    credit_id=credit.id,
                    invoice_id=invoice_id,
                    invoice_run_id=invoice_run_id,
                    applied_amount=amount_to_apply,
                    credit_remaining_before=remaining_before,
                    description=f"Applied to invoice for {billing_month}",
                )
            )

            credit.remaining_amount = remaining_before - amount_to_apply
            if credit.remaining_amount <= ZERO:
                credit.status = CreditStatus.DEPLETED
            await self.credits.save(credit)

            remaining_invoice_amount -= amount_to_apply
            result.total_credits_applied += amount_to_apply
            result.credits_used.append(
                CreditApplication(
                    credit_id=credit.id,
                    credit_type=credit.type.value,
                    applied_amount=amount_to_apply,
                    credit_remaining_before=remaining_before,
                    credit_remaining_after=credit.remaining_amount,
                    ledger_entry_id=ledger_entry.id,
                )
            )
            logger.info(
                f"Applied credit {credit.id}: {amount_to_apply} "
                f"(remaining {credit.remaining_amount}) to invoice {invoice_id}"
            )

        result.final_amount = remaining_invoice_amount
        return result

    async def capture_credit_snapshot(
        self,
        customer_id: uuid.UUID,
        billing_month: BillingMonth,
    ) -> List[Dict[str, Any]]:
        """Eligible credits and their balances before application."""
        credits = await self.load_applicable_credits(customer_id, billing_month)
        return [
            {
                "credit_id": str(credit.id),
                "type": credit.type.value,
                "currency": credit.currency,
                "remaining_amount_before": money_str(credit.remaining_amount),
                "valid_from": credit.valid_from.isoformat(),
                "valid_to": credit.valid_to.isoformat() if credit.valid_to else None,
                "allow_carry_over": credit.allow_carry_over,
            }
            for credit in credits
        ]

    async def get_customer_credit_summary(self, customer_id: uuid.UUID) -> Dict[str, Any]:
        """Active credit balance, in total and by credit type."""
        credits = [
            credit
            for credit in await self.credits.list_for_customer(customer_id)
            if credit.status == CreditStatus.ACTIVE and credit.remaining_amount > ZERO
        ]

        by_type: Dict[str, Dict[str, Any]] = {}
        total_remaining = ZERO
        for credit in credits:
            total_remaining += credit.remaining_amount
            bucket = by_type.setdefault(credit.type.value, {"count": 0, "remaining_amount": ZERO})
            bucket["count"] += 1
            bucket["remaining_amount"] += credit.remaining_amount

        return {
            "total_active_credits": len(credits),
            "total_remaining_amount": money_str(total_remaining),
            "credits_by_type": {
                credit_type: {"count": bucket["count"], "remaining_amount": money_str(bucket["remaining_amount"])}
                for credit_type, bucket in sorted(by_type.items())
            },
        }
