"""
Sieger Billing - Invoice Lock Service

One-way freeze of an invoice. Locking re-reads the invoice under a row lock
inside a single transaction, so of two concurrent lock requests exactly one
succeeds and the other gets an "already locked" conflict.

After locking, the before_flush guard in app.models.invoice refuses every
further change to the invoice and its line items.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.database import scoped_transaction
from app.models.audit import AuditAction
from app.models.base import utcnow
from app.models.invoice import Invoice, InvoiceStatus
from app.repositories.invoice_repository import InvoiceRepository
from app.services.audit_service import AuditService
from app.utils.error_handling import InvoiceAlreadyLockedException, InvoiceNotFoundException

logger = logging.getLogger(__name__)


def mark_locked(invoice: Invoice, actor: Optional[str], locked_at: Optional[datetime] = None) -> None:
    """Set the lock fields on an invoice that is not yet locked."""
    invoice.status = InvoiceStatus.LOCKED
    invoice.locked_at = locked_at or utcnow()
    invoice.locked_by = actor


class InvoiceLockService:
    """Service for locking invoices."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.invoices = InvoiceRepository(db)
        self.audit = AuditService(db)

    async def lock(self, invoice_id: uuid.UUID, actor: Optional[str] = None) -> Invoice:
        """
        Lock an invoice.

        Raises InvoiceAlreadyLockedException (carrying locked_at/locked_by)
        when the invoice is already locked; locking is never a silent no-op.
        """
        async with scoped_transaction(self.db):
            invoice = await self.invoices.get_for_update(invoice_id)
            if invoice is None:
                raise InvoiceNotFoundException(invoice_id)

            if invoice.is_locked:
                logger.warning(f"Lock refused: invoice {invoice.invoice_number} already locked by {invoice.locked_by}")
                raise InvoiceAlreadyLockedException(invoice.id, invoice.locked_at, invoice.locked_by)

            previous_status = invoice.status
            mark_locked(invoice, actor)
            await self.db.flush()

            await self.audit.log_action(
                AuditAction.INVOICE_LOCK,
                "invoices",
                invoice.id,
                actor=actor,
                old_values={"status": previous_status},
                new_values={"status": invoice.status, "locked_at": invoice.locked_at},
            )

        logger.info(f"Invoice {invoice.invoice_number} locked by {actor}")
        return invoice
