"""
Sieger Billing - Invoice Run Repository
"""

import uuid
from typing import Any, Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.invoice_run import ACTIVE_RUN_STATUSES, InvoiceRun, InvoiceRunStatus


class InvoiceRunRepository:
    """Data access for invoice runs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, run_id: uuid.UUID, refresh: bool = False) -> Optional[InvoiceRun]:
        result = await self.db.execute(
            select(InvoiceRun)
            .where(InvoiceRun.id == run_id)
            .execution_options(populate_existing=refresh)
        )
        return result.scalar_one_or_none()

    async def find_by_key(self, billing_month: str, scope_key: str, source_key: str) -> Optional[InvoiceRun]:
        result = await self.db.execute(
            select(InvoiceRun)
            .where(InvoiceRun.billing_month == billing_month)
            .where(InvoiceRun.scope_key == scope_key)
            .where(InvoiceRun.source_key == source_key)
        )
        return result.scalar_one_or_none()

    async def find_locked(self, billing_month: str) -> Optional[InvoiceRun]:
        result = await self.db.execute(
            select(InvoiceRun)
            .where(InvoiceRun.billing_month == billing_month)
            .where(InvoiceRun.status == InvoiceRunStatus.LOCKED)
            .order_by(InvoiceRun.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_active(self, billing_month: str) -> Optional[InvoiceRun]:
        result = await self.db.execute(
            select(InvoiceRun)
            .where(InvoiceRun.billing_month == billing_month)
            .where(InvoiceRun.status.in_(ACTIVE_RUN_STATUSES))
            .order_by(InvoiceRun.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add(self, run: InvoiceRun) -> InvoiceRun:
        self.db.add(run)
        await self.db.flush()
        return run

    async def compare_and_set_status(
        self,
        run_id: uuid.UUID,
        expected: InvoiceRunStatus,
        new_status: InvoiceRunStatus,
        **values: Any,
    ) -> bool:
        """
        Move a run to `new_status` only if it is still in `expected`.

        Returns False when another caller changed the status first.
        """
        result = await self.db.execute(
            update(InvoiceRun)
            .where(InvoiceRun.id == run_id)
            .where(InvoiceRun.status == expected)
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list(
        self,
        billing_month: Optional[str] = None,
        status: Optional[InvoiceRunStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[InvoiceRun], int]:
        query = select(InvoiceRun)
        count_query = select(func.count(InvoiceRun.id))
        if billing_month:
            query = query.where(InvoiceRun.billing_month == billing_month)
            count_query = count_query.where(InvoiceRun.billing_month == billing_month)
        if status:
            query = query.where(InvoiceRun.status == status)
            count_query = count_query.where(InvoiceRun.status == status)

        total = (await self.db.execute(count_query)).scalar() or 0

        query = (
            query
            .order_by(InvoiceRun.created_at.desc(), InvoiceRun.id)
            .limit(page_size)
            .offset((page - 1) * page_size)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def list_for_month(
        self,
        billing_month: str,
        statuses: Iterable[InvoiceRunStatus],
    ) -> List[InvoiceRun]:
        result = await self.db.execute(
            select(InvoiceRun)
            .where(InvoiceRun.billing_month == billing_month)
            .where(InvoiceRun.status.in_(list(statuses)))
            .order_by(InvoiceRun.created_at, InvoiceRun.id)
        )
        return list(result.scalars().all())
