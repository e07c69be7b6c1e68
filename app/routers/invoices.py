"""
Sieger Billing - Invoices Router

API endpoints for invoices produced by invoice runs.

Lock Guarantee:
- A locked invoice cannot be issued, paid, cancelled or edited; every such
  request returns 409 INVOICE_LOCKED
- Locking twice returns 409 INVOICE_ALREADY_LOCKED with the original
  locked_at / locked_by
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_actor
from app.models.invoice import InvoiceStatus
from app.schemas.invoice import (
    InvoiceListResponse,
    InvoiceLockResponse,
    InvoiceResponse,
    InvoiceUpdateRequest,
)
from app.services.invoice_lock_service import InvoiceLockService
from app.services.invoice_service import InvoiceService


router = APIRouter()


# ===========================================
# QUERIES
# ===========================================

@router.get(
    "",
    response_model=InvoiceListResponse,
    summary="List invoices",
)
async def list_invoices(
    customer_id: Optional[UUID] = Query(None, description="Filter by customer"),
    invoice_run_id: Optional[UUID] = Query(None, description="Filter by invoice run"),
    billing_month: Optional[str] = Query(None, description="Filter by billing month (YYYY-MM)"),
    invoice_status: Optional[InvoiceStatus] = Query(None, alias="status", description="Filter by status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceService(db)
    invoices, total = await service.list_invoices(
        customer_id=customer_id,
        invoice_run_id=invoice_run_id,
        billing_month=billing_month,
        status=invoice_status,
        page=page,
        page_size=page_size,
    )
    return InvoiceListResponse(
        invoices=[InvoiceResponse.model_validate(invoice) for invoice in invoices],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Get invoice",
)
async def get_invoice(
    invoice_id: UUID,
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceService(db)
    return InvoiceResponse.model_validate(await service.get_invoice(invoice_id))


# ===========================================
# LOCK
# ===========================================

@router.post(
    "/{invoice_id}/lock",
    response_model=InvoiceLockResponse,
    summary="Lock invoice",
)
async def lock_invoice(
    invoice_id: UUID,
    actor: Optional[str] = Depends(get_actor),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Lock an invoice. Irreversible: no endpoint unlocks it.
    """
    service = InvoiceLockService(db)
    return InvoiceLockResponse.model_validate(await service.lock(invoice_id, actor=actor))


# ===========================================
# LIFECYCLE
# ===========================================

@router.post(
    "/{invoice_id}/issue",
    response_model=InvoiceResponse,
    summary="Issue invoice",
)
async def issue_invoice(
    invoice_id: UUID,
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceService(db)
    return InvoiceResponse.model_validate(await service.issue_invoice(invoice_id))


@router.post(
    "/{invoice_id}/pay",
    response_model=InvoiceResponse,
    summary="Mark invoice paid",
)
async def pay_invoice(
    invoice_id: UUID,
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceService(db)
    return InvoiceResponse.model_validate(await service.mark_paid(invoice_id))


@router.post(
    "/{invoice_id}/cancel",
    response_model=InvoiceResponse,
    summary="Cancel invoice",
)
async def cancel_invoice(
    invoice_id: UUID,
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceService(db)
    return InvoiceResponse.model_validate(await service.cancel_invoice(invoice_id))


@router.patch(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Update invoice",
)
async def update_invoice(
    invoice_id: UUID,
    request: InvoiceUpdateRequest,
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceService(db)
    invoice = await service.update_invoice(
        invoice_id,
        notes=request.notes,
        due_date=request.due_date,
        tax_amount=request.tax_amount,
    )
    return InvoiceResponse.model_validate(invoice)
