"""
Sieger Billing - Invoice Runs Router

API endpoints for the monthly billing workflow. A month is checked with
/validate, then a run is queued and executed; it is locked once its
invoices are final.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_actor
from app.models.invoice_run import InvoiceRunStatus
from app.schemas.invoice_run import (
    InvoiceRunCreateRequest,
    InvoiceRunCreateResponse,
    InvoiceRunExecuteRequest,
    InvoiceRunExecuteResponse,
    InvoiceRunListResponse,
    InvoiceRunResponse,
    InvoiceRunValidateRequest,
    InvoiceRunValidateResponse,
)
from app.services.invoice_run_service import InvoiceRunService


router = APIRouter()


@router.post(
    "",
    response_model=InvoiceRunCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Queue invoice run",
)
async def create_invoice_run(
    request: InvoiceRunCreateRequest,
    response: Response,
    actor: Optional[str] = Depends(get_actor),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Queue an invoice run for a billing month.

    Repeating the same request returns the existing run with 200 and
    idempotent=true. A locked month or a run already in progress for the
    month is a 409.
    """
    service = InvoiceRunService(db)
    result = await service.create_run(
        billing_month=request.billing_month,
        target_customer_id=request.target_customer_id,
        ingestion_batch_id=request.ingestion_batch_id,
        created_by=actor,
    )
    if result.idempotent:
        response.status_code = status.HTTP_200_OK

    return InvoiceRunCreateResponse(
        **InvoiceRunResponse.model_validate(result.run).model_dump(),
        idempotent=result.idempotent,
    )


@router.get(
    "",
    response_model=InvoiceRunListResponse,
    summary="List invoice runs",
)
async def list_invoice_runs(
    billing_month: Optional[str] = Query(None, description="Filter by billing month (YYYY-MM)"),
    run_status: Optional[InvoiceRunStatus] = Query(None, alias="status", description="Filter by status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceRunService(db)
    runs, total = await service.list_runs(
        billing_month=billing_month,
        status=run_status,
        page=page,
        page_size=page_size,
    )
    return InvoiceRunListResponse(
        runs=[InvoiceRunResponse.model_validate(run) for run in runs],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post(
    "/validate",
    response_model=InvoiceRunValidateResponse,
    summary="Validate invoice run",
)
async def validate_invoice_run(
    request: InvoiceRunValidateRequest,
    db: AsyncSession = Depends(get_async_session),
):
    """
    Check a billing month before queuing a run.

    Errors (locked month, run in progress, no cost data, unknown or
    inactive customer, no billable customers) mean a run should not be
    queued; warnings are informational.
    """
    service = InvoiceRunService(db)
    validation = await service.validate_run(
        billing_month=request.billing_month,
        target_customer_id=request.target_customer_id,
    )
    return InvoiceRunValidateResponse(
        valid=validation.valid,
        summary=validation.summary,
        errors=validation.errors,
        warnings=validation.warnings,
    )


@router.get(
    "/{run_id}",
    response_model=InvoiceRunResponse,
    summary="Get invoice run",
)
async def get_invoice_run(
    run_id: UUID,
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceRunService(db)
    return InvoiceRunResponse.model_validate(await service.get_run(run_id))


@router.post(
    "/{run_id}/execute",
    response_model=InvoiceRunExecuteResponse,
    summary="Execute invoice run",
)
async def execute_invoice_run(
    run_id: UUID,
    request: Optional[InvoiceRunExecuteRequest] = Body(None),
    actor: Optional[str] = Depends(get_actor),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Execute a QUEUED run: special rules, pricing and credits for every
    customer in scope, one invoice per customer.

    Customers that fail are listed in errors and the run ends FAILED;
    invoices of the other customers are kept.
    """
    request = request or InvoiceRunExecuteRequest()
    service = InvoiceRunService(db)
    result = await service.execute_run(
        run_id,
        ingestion_batch_id=request.ingestion_batch_id,
        target_customer_id=request.target_customer_id,
        actor=actor,
    )
    return InvoiceRunExecuteResponse(
        run=InvoiceRunResponse.model_validate(result.run),
        success=result.success,
        invoices_generated=result.invoices_generated,
        errors=result.errors,
        summary=result.metadata,
    )


@router.post(
    "/{run_id}/lock",
    response_model=InvoiceRunResponse,
    summary="Lock invoice run",
)
async def lock_invoice_run(
    run_id: UUID,
    actor: Optional[str] = Depends(get_actor),
    db: AsyncSession = Depends(get_async_session),
):
    """Lock a SUCCEEDED or FAILED run and every invoice it committed."""
    service = InvoiceRunService(db)
    return InvoiceRunResponse.model_validate(await service.lock_run(run_id, actor=actor))
