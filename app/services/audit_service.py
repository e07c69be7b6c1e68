"""
Sieger Billing - Audit Trail Service

Audit logging for invoice runs, invoices and raw cost imports.

Entries are flushed inside the caller's transaction, so an audited change and
its audit row commit or roll back together.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit import AuditAction, AuditLog


def _json_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_value(item) for item in value]
    return value


class AuditService:
    """Service for writing and reading the audit trail."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log_action(
        self,
        action: AuditAction,
        target_entity_type: str,
        target_entity_id: Any,
        actor: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> AuditLog:
        """
        Log an audit action.

        Args:
            action: Type of action performed
            target_entity_type: Table of the affected record (e.g. 'invoice_runs')
            target_entity_id: ID of the affected record
            actor: Who performed the action; None for system actions
            old_values: Affected fields before the action
            new_values: Affected fields after the action
            description: Free-text summary

        Returns:
            Created AuditLog record (flushed, not committed)
        """
        old_values = _json_value(old_values) if old_values is not None else None
        new_values = _json_value(new_values) if new_values is not None else None

        changes = None
        if old_values and new_values:
            changes = self._calculate_changes(old_values, new_values)

        audit_log = AuditLog(
            actor=actor,
            action=action,
            target_entity_type=target_entity_type,
            target_entity_id=str(target_entity_id),
            old_values=old_values,
            new_values=new_values,
            changes=changes,
            description=description,
        )

        self.db.add(audit_log)
        await self.db.flush()

        return audit_log

    def _calculate_changes(
        self,
        old_values: Dict[str, Any],
        new_values: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Calculate what changed between old and new values."""
        changes = {}

        for key in set(old_values) | set(new_values):
            old_val = old_values.get(key)
            new_val = new_values.get(key)

            if old_val != new_val:
                changes[key] = {
                    "old": old_val,
                    "new": new_val,
                }

        return changes

    async def get_audit_logs(
        self,
        target_entity_type: Optional[str] = None,
        target_entity_id: Optional[Any] = None,
        action: Optional[AuditAction] = None,
        actor: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[AuditLog]:
        """Audit logs, newest first, with optional filtering."""
        query = select(AuditLog)

        if target_entity_type:
            query = query.where(AuditLog.target_entity_type == target_entity_type)

        if target_entity_id is not None:
            query = query.where(AuditLog.target_entity_id == str(target_entity_id))

        if action:
            query = query.where(AuditLog.action == action)

        if actor:
            query = query.where(AuditLog.actor == actor)

        query = query.order_by(AuditLog.created_at.desc()).offset(skip).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_entity_history(
        self,
        target_entity_type: str,
        target_entity_id: Any,
    ) -> List[Dict[str, Any]]:
        """
        Get complete history of a specific record.

        Returns chronological list of all audited actions on it.
        """
        logs = await self.get_audit_logs(
            target_entity_type=target_entity_type,
            target_entity_id=target_entity_id,
            limit=1000,
        )

        history = []
        for log in reversed(logs):  # Oldest first
            entry = {
                "timestamp": log.created_at.isoformat(),
                "action": log.action.value,
                "actor": log.actor,
            }
            if log.changes:
                entry["changes"] = log.changes
            elif log.new_values:
                entry["values"] = log.new_values
            history.append(entry)

        return history
