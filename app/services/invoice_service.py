"""
Sieger Billing - Invoice Service

Invoice lifecycle after an invoice run has produced it:
DRAFT -> ISSUED -> PAID, with DRAFT/ISSUED -> CANCELLED.

Locked invoices are read-only. Every mutation here re-reads the invoice
under a row lock and refuses to touch it once it is locked; the before_flush
guard in app.models.invoice backs this up for any other code path.
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from app.database import scoped_transaction
from app.models.base import utcnow
from app.models.invoice import Invoice, InvoiceStatus
from app.repositories.invoice_repository import InvoiceRepository
from app.utils.billing_month import BillingMonth
from app.utils.error_handling import (
    InvalidInvoiceStateException,
    InvoiceLockedException,
    InvoiceNotFoundException,
    ValidationException,
)
from app.utils.money import ZERO, quantize_money

logger = logging.getLogger(__name__)


INVOICE_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.ISSUED, InvoiceStatus.CANCELLED}),
    InvoiceStatus.ISSUED: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
    InvoiceStatus.LOCKED: frozenset(),
}


class InvoiceService:
    """Service for invoice operations."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.invoices = InvoiceRepository(db)

    # ===========================================
    # QUERIES
    # ===========================================

    async def get_invoice(self, invoice_id: uuid.UUID) -> Invoice:
        invoice = await self.invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundException(invoice_id)
        return invoice

    async def list_invoices(
        self,
        customer_id: Optional[uuid.UUID] = None,
        invoice_run_id: Optional[uuid.UUID] = None,
        billing_month: Optional[str] = None,
        status: Optional[InvoiceStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Invoice], int]:
        if billing_month is not None:
            billing_month = str(BillingMonth.parse(billing_month))
        return await self.invoices.list(
            customer_id=customer_id,
            invoice_run_id=invoice_run_id,
            billing_month=billing_month,
            status=status,
            page=page,
            page_size=page_size,
        )

    # ===========================================
    # MUTATIONS
    # ===========================================

    async def _load_mutable(self, invoice_id: uuid.UUID, operation: str) -> Invoice:
        invoice = await self.invoices.get_for_update(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundException(invoice_id)
        if invoice.is_locked:
            logger.warning(f"Refused to {operation} locked invoice {invoice.invoice_number}")
            raise InvoiceLockedException(invoice.id, operation=operation)
        return invoice

    async def _transition(self, invoice_id: uuid.UUID, new_status: InvoiceStatus, operation: str) -> Invoice:
        async with scoped_transaction(self.db):
            invoice = await self._load_mutable(invoice_id, operation)
            if new_status not in INVOICE_TRANSITIONS[invoice.status]:
                raise InvalidInvoiceStateException(invoice.id, invoice.status.value, new_status.value)

            now = utcnow()
            invoice.status = new_status
            if new_status == InvoiceStatus.ISSUED:
                invoice.issued_at = now
            elif new_status == InvoiceStatus.PAID:
                invoice.paid_at = now
            elif new_status == InvoiceStatus.CANCELLED:
                invoice.cancelled_at = now
            await self.db.flush()

        logger.info(f"Invoice {invoice.invoice_number} is now {new_status.value}")
        return await self.get_invoice(invoice_id)

    async def issue_invoice(self, invoice_id: uuid.UUID) -> Invoice:
        return await self._transition(invoice_id, InvoiceStatus.ISSUED, "issue")

    async def mark_paid(self, invoice_id: uuid.UUID) -> Invoice:
        return await self._transition(invoice_id, InvoiceStatus.PAID, "pay")

    async def cancel_invoice(self, invoice_id: uuid.UUID) -> Invoice:
        return await self._transition(invoice_id, InvoiceStatus.CANCELLED, "cancel")

    async def update_invoice(
        self,
        invoice_id: uuid.UUID,
        notes: Optional[str] = None,
        due_date: Optional[date] = None,
        tax_amount: Optional[Decimal] = None,
    ) -> Invoice:
        """
        Update an unlocked invoice.

        Notes can change until the invoice is locked; due date and tax only
        while it is a DRAFT. A new tax amount recomputes the total.
        """
        async with scoped_transaction(self.db):
            invoice = await self._load_mutable(invoice_id, "modify")

            if (due_date is not None or tax_amount is not None) and invoice.status != InvoiceStatus.DRAFT:
                raise InvalidInvoiceStateException(invoice.id, invoice.status.value, InvoiceStatus.DRAFT.value)

            if notes is not None:
                invoice.notes = notes
            if due_date is not None:
                if due_date < invoice.issue_date:
                    raise ValidationException(
                        "Due date cannot be before the issue date",
                        field="due_date",
                        details={"issue_date": invoice.issue_date.isoformat(), "due_date": due_date.isoformat()},
                    )
                invoice.due_date = due_date
            if tax_amount is not None:
                if tax_amount < ZERO:
                    raise ValidationException("Tax amount cannot be negative", field="tax_amount")
                invoice.tax_amount = quantize_money(tax_amount)
                invoice.total_amount = max(
                    invoice.subtotal + invoice.tax_amount - invoice.credit_amount,
                    ZERO,
                )
            await self.db.flush()

        logger.info(f"Invoice {invoice.invoice_number} updated")
        return await self.get_invoice(invoice_id)
