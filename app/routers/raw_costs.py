"""
Sieger Billing - Raw Cost Router

Bulk import of raw usage-cost rows.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_actor
from app.schemas.raw_cost import RawCostBatchResponse, RawCostImportRequest
from app.services.raw_cost_import_service import RawCostImportService


router = APIRouter()


@router.post(
    "/import",
    response_model=RawCostBatchResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Import raw cost rows",
)
async def import_raw_costs(
    request: RawCostImportRequest,
    response: Response,
    actor: Optional[str] = Depends(get_actor),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Import raw cost rows as one ingestion batch.

    The same entries for the same month and source are imported once; a
    repeat returns the existing batch with 200 and idempotent=true.
    """
    service = RawCostImportService(db)
    result = await service.import_batch(
        source=request.source,
        entries=[entry.model_dump() for entry in request.entries],
        month=request.month,
        created_by=actor,
    )
    if result.idempotent:
        response.status_code = status.HTTP_200_OK

    return RawCostBatchResponse(
        id=result.batch.id,
        source=result.batch.source,
        month=result.batch.month,
        row_count=result.batch.row_count,
        checksum=result.batch.checksum,
        created_by=result.batch.created_by,
        created_at=result.batch.created_at,
        idempotent=result.idempotent,
    )
