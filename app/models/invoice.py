"""
Sieger Billing - Invoice Model

Invoices produced by invoice runs, and their line items.

Lock Guarantee:
- Once locked_at is set (or status is LOCKED) the invoice and its line items
  are frozen. A before_flush hook on every Session refuses to write any
  change to them, whichever code path made the change.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from sqlalchemy import Date, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text, Uuid, event, inspect
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from app.models.base import BaseModel
from app.utils.error_handling import InvoiceLockedException


class InvoiceStatus(str, Enum):
    """Invoice status workflow."""
    DRAFT = "DRAFT"           # Produced by a run, not yet sent
    ISSUED = "ISSUED"         # Sent to the customer
    PAID = "PAID"             # Payment received
    CANCELLED = "CANCELLED"   # Voided
    LOCKED = "LOCKED"         # Frozen, terminal


# Currency recorded on an invoice whose entries span several currencies
MIXED_CURRENCY = "MIXED"


class Invoice(BaseModel):
    """
    Invoice model.

    Amounts: raw_amount (list cost after special rules) - discount_amount =
    subtotal; subtotal + tax_amount - credit_amount = total_amount.
    """

    __tablename__ = "invoices"

    invoice_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("invoice_runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id"),
        nullable=False,
        index=True,
    )
    billing_month: Mapped[str] = mapped_column(String(7), nullable=False, index=True)

    # Invoice Number
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    status: Mapped[InvoiceStatus] = mapped_column(
        SQLEnum(InvoiceStatus),
        default=InvoiceStatus.DRAFT,
        nullable=False,
        index=True,
    )
    currency: Mapped[str] = mapped_column(String(8), nullable=False)

    # Amounts
    raw_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )
    subtotal: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )
    tax_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )
    credit_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )

    # Dates
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    issued_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Currency breakdown, pricing summary, credits used, special rule effects
    invoice_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    # Rules and credits as they were when the invoice was computed
    config_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lock
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    line_items: Mapped[List["InvoiceLineItem"]] = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.line_number",
    )

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None or self.status == InvoiceStatus.LOCKED

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, number={self.invoice_number}, status={self.status})>"


class InvoiceLineItem(BaseModel):
    """
    Invoice line item, one per SKU group.

    quantity is the number of cost rows aggregated into the line.
    """

    __tablename__ = "invoice_line_items"

    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    sku_group_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(
        Numeric(precision=20, scale=6),
        nullable=False,
        default=Decimal("1"),
    )
    unit_price: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=6), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    # Provenance: raw amount, entry count, pricing rule, currencies
    line_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    invoice: Mapped["Invoice"] = relationship(
        "Invoice",
        back_populates="line_items",
    )

    def __repr__(self) -> str:
        return f"<InvoiceLineItem(id={self.id}, line={self.line_number}, amount={self.amount})>"


# ===========================================
# LOCK GUARD
# ===========================================

def _committed_value(obj: Any, key: str) -> Any:
    """Value of an attribute as it was loaded, ignoring pending changes."""
    history = inspect(obj).attrs[key].load_history()
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return None


def _was_locked(invoice: Invoice) -> bool:
    return (
        _committed_value(invoice, "locked_at") is not None
        or _committed_value(invoice, "status") == InvoiceStatus.LOCKED
    )


def _owning_invoice(session: Session, item: InvoiceLineItem) -> Optional[Invoice]:
    invoice = item.__dict__.get("invoice")
    if invoice is None and item.invoice_id is not None:
        invoice = session.get(Invoice, item.invoice_id)
    return invoice


@event.listens_for(Session, "before_flush")
def refuse_locked_invoice_changes(session: Session, flush_context, instances) -> None:
    """Refuse to flush any change to a locked invoice or its line items."""
    for obj in session.dirty:
        if (
            isinstance(obj, Invoice)
            and session.is_modified(obj, include_collections=False)
            and _was_locked(obj)
        ):
            raise InvoiceLockedException(obj.id, operation="modify")

    for obj in session.deleted:
        if isinstance(obj, Invoice) and _was_locked(obj):
            raise InvoiceLockedException(obj.id, operation="delete")

    touched_items = [
        (obj, operation)
        for objects, operation in (
            (session.new, "add line items to"),
            (session.dirty, "modify line items of"),
            (session.deleted, "delete line items of"),
        )
        for obj in objects
        if isinstance(obj, InvoiceLineItem)
    ]
    for item, operation in touched_items:
        if operation == "modify line items of" and not session.is_modified(item):
            continue
        invoice = _owning_invoice(session, item)
        if invoice is None or invoice in session.new:
            continue
        if _was_locked(invoice):
            raise InvoiceLockedException(invoice.id, operation=operation)
