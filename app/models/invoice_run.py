"""
Sieger Billing - Invoice Run Model

One execution attempt of the billing pipeline for a month.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy import DateTime, ForeignKey, JSON, String, Text, Uuid, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel


class InvoiceRunStatus(str, Enum):
    """Invoice run status workflow."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    LOCKED = "LOCKED"


# Every status change goes through this table; nothing returns to QUEUED.
RUN_TRANSITIONS: Dict[InvoiceRunStatus, FrozenSet[InvoiceRunStatus]] = {
    InvoiceRunStatus.QUEUED: frozenset({InvoiceRunStatus.RUNNING}),
    InvoiceRunStatus.RUNNING: frozenset({InvoiceRunStatus.SUCCEEDED, InvoiceRunStatus.FAILED}),
    InvoiceRunStatus.SUCCEEDED: frozenset({InvoiceRunStatus.LOCKED}),
    InvoiceRunStatus.FAILED: frozenset({InvoiceRunStatus.LOCKED}),
    InvoiceRunStatus.LOCKED: frozenset(),
}

ACTIVE_RUN_STATUSES = (InvoiceRunStatus.QUEUED, InvoiceRunStatus.RUNNING)

# Stored in scope_key when the run covers every customer
ALL_CUSTOMERS_SCOPE = "*"


class InvoiceRun(BaseModel):
    """
    Invoice run.

    (billing_month, scope_key, source_key) is unique: scope_key is the target
    customer id as text, or "*" for all customers, so the constraint also
    holds for unscoped runs on databases that treat NULLs as distinct.
    """

    __tablename__ = "invoice_runs"
    __table_args__ = (
        UniqueConstraint("billing_month", "scope_key", "source_key", name="uq_invoice_runs_idempotency"),
    )

    billing_month: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    target_customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
    )
    scope_key: Mapped[str] = mapped_column(String(36), nullable=False, default=ALL_CUSTOMERS_SCOPE)
    ingestion_batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("raw_cost_ingestion_batches.id", ondelete="SET NULL"),
        nullable=True,
    )
    source_key: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[InvoiceRunStatus] = mapped_column(
        SQLEnum(InvoiceRunStatus),
        default=InvoiceRunStatus.QUEUED,
        nullable=False,
        index=True,
    )
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Counts, currency breakdown, totals, errors
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<InvoiceRun(id={self.id}, month={self.billing_month}, status={self.status})>"
