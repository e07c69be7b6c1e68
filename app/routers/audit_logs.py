"""
Sieger Billing - Audit Log Router

Read-only access to the audit trail.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.models.audit import AuditAction
from app.schemas.audit import AuditLogListResponse, AuditLogResponse, EntityHistoryResponse
from app.services.audit_service import AuditService


router = APIRouter()


@router.get(
    "",
    response_model=AuditLogListResponse,
    summary="List audit logs",
)
async def list_audit_logs(
    target_entity_type: Optional[str] = Query(None, description="Filter by table, e.g. invoice_runs"),
    target_entity_id: Optional[str] = Query(None, description="Filter by record ID"),
    action: Optional[AuditAction] = Query(None, description="Filter by action type"),
    actor: Optional[str] = Query(None, description="Filter by actor"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Get audit logs, newest first.

    Supports filtering by:
    - Table of the affected record
    - Specific record ID
    - Action type
    - Actor
    """
    service = AuditService(db)
    logs = await service.get_audit_logs(
        target_entity_type=target_entity_type,
        target_entity_id=target_entity_id,
        action=action,
        actor=actor,
        skip=skip,
        limit=limit,
    )
    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(log) for log in logs],
        skip=skip,
        limit=limit,
    )


@router.get(
    "/history/{target_entity_type}/{target_entity_id}",
    response_model=EntityHistoryResponse,
    summary="Get record history",
)
async def get_entity_history(
    target_entity_type: str,
    target_entity_id: str,
    db: AsyncSession = Depends(get_async_session),
):
    """Chronological list of every audited action on one record."""
    service = AuditService(db)
    history = await service.get_entity_history(target_entity_type, target_entity_id)
    return EntityHistoryResponse(
        entity_type=target_entity_type,
        entity_id=target_entity_id,
        history=history,
    )
