"""
Sieger Billing - Audit Log Model

Append-only record of who did what to which billing record.
"""

from enum import Enum
from typing import Optional

from sqlalchemy import JSON, String, Text, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel


class AuditAction(str, Enum):
    """Audited billing operations."""
    RUN_CREATE = "RUN_CREATE"
    RUN_START = "RUN_START"
    RUN_COMPLETE = "RUN_COMPLETE"
    RUN_FAILED = "RUN_FAILED"
    RUN_LOCK = "RUN_LOCK"
    INVOICE_LOCK = "INVOICE_LOCK"
    RAW_COST_IMPORT = "RAW_COST_IMPORT"


class AuditLog(BaseModel):
    """
    One audited action.

    old_values/new_values hold the affected fields before and after the
    action; changes holds only the fields that differ.
    """

    __tablename__ = "audit_logs"

    actor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    action: Mapped[AuditAction] = mapped_column(SQLEnum(AuditAction), nullable=False, index=True)

    # e.g. "invoice_runs", "invoices"
    target_entity_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    target_entity_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    old_values: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    new_values: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    changes: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, type={self.target_entity_type})>"
