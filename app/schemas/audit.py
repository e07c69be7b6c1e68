"""
Sieger Billing - Audit Log Schemas
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel

from app.models.audit import AuditAction


class AuditLogResponse(BaseModel):
    """Schema for one audit log entry."""
    id: UUID
    created_at: datetime
    actor: Optional[str] = None
    action: AuditAction
    target_entity_type: str
    target_entity_id: str
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    changes: Optional[Dict[str, Any]] = None
    description: Optional[str] = None

    class Config:
        from_attributes = True


class AuditLogListResponse(BaseModel):
    """Audit log entries, newest first."""
    items: List[AuditLogResponse]
    skip: int
    limit: int


class EntityHistoryResponse(BaseModel):
    """Chronological history of one record."""
    entity_type: str
    entity_id: str
    history: List[Dict[str, Any]]
