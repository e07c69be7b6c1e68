"""
Sieger Billing - Invoice Repository
"""

import uuid
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.invoice import Invoice, InvoiceStatus


class InvoiceRepository:
    """Data access for invoices and line items."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, invoice_id: uuid.UUID) -> Optional[Invoice]:
        result = await self.db.execute(
            select(Invoice)
            .options(selectinload(Invoice.line_items))
            .where(Invoice.id == invoice_id)
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, invoice_id: uuid.UUID) -> Optional[Invoice]:
        """Re-read an invoice under a row lock, discarding any cached state."""
        result = await self.db.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_run_for_update(self, invoice_run_id: uuid.UUID) -> List[Invoice]:
        result = await self.db.execute(
            select(Invoice)
            .where(Invoice.invoice_run_id == invoice_run_id)
            .order_by(Invoice.invoice_number)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def number_exists(self, invoice_number: str) -> bool:
        result = await self.db.execute(
            select(func.count(Invoice.id)).where(Invoice.invoice_number == invoice_number)
        )
        return (result.scalar() or 0) > 0

    async def count_with_prefix(self, prefix: str) -> int:
        result = await self.db.execute(
            select(func.count(Invoice.id)).where(Invoice.invoice_number.like(f"{prefix}%"))
        )
        return result.scalar() or 0

    async def add(self, invoice: Invoice) -> Invoice:
        self.db.add(invoice)
        await self.db.flush()
        return invoice

    async def list(
        self,
        customer_id: Optional[uuid.UUID] = None,
        invoice_run_id: Optional[uuid.UUID] = None,
        billing_month: Optional[str] = None,
        status: Optional[InvoiceStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Invoice], int]:
        filters = []
        if customer_id:
            filters.append(Invoice.customer_id == customer_id)
        if invoice_run_id:
            filters.append(Invoice.invoice_run_id == invoice_run_id)
        if billing_month:
            filters.append(Invoice.billing_month == billing_month)
        if status:
            filters.append(Invoice.status == status)

        total = (await self.db.execute(select(func.count(Invoice.id)).where(*filters))).scalar() or 0

        result = await self.db.execute(
            select(Invoice)
            .options(selectinload(Invoice.line_items))
            .where(*filters)
            .order_by(Invoice.billing_month.desc(), Invoice.invoice_number)
            .limit(page_size)
            .offset((page - 1) * page_size)
        )
        return list(result.scalars().all()), total
