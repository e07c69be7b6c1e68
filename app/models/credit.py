"""
Sieger Billing - Credit Models

Customer credits and the append-only ledger of their consumption.

The ledger is the source of truth: for every credit,
sum(ledger.applied_amount) == total_amount - remaining_amount.
"""

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, Date, ForeignKey, Numeric, String, Text, Uuid,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel


class CreditType(str, Enum):
    """Why a credit was granted."""
    PROMOTIONAL = "PROMOTIONAL"
    COMMITMENT = "COMMITMENT"
    GOODWILL = "GOODWILL"
    REFUND = "REFUND"


class CreditStatus(str, Enum):
    """Credit status."""
    ACTIVE = "ACTIVE"
    DEPLETED = "DEPLETED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class Credit(BaseModel):
    """
    Monetary grant to a customer.

    total_amount never changes after creation; remaining_amount only goes
    down, and only through CreditsEngine.apply_credits_to_invoice.
    """

    __tablename__ = "credits"
    __table_args__ = (
        CheckConstraint("remaining_amount >= 0", name="remaining_non_negative"),
        CheckConstraint("remaining_amount <= total_amount", name="remaining_within_total"),
    )

    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[CreditType] = mapped_column(SQLEnum(CreditType), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    remaining_amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    allow_carry_over: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[CreditStatus] = mapped_column(
        SQLEnum(CreditStatus),
        default=CreditStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    ledger_entries: Mapped[List["CreditLedger"]] = relationship(
        "CreditLedger",
        back_populates="credit",
    )

    @property
    def used_amount(self) -> Decimal:
        return self.total_amount - self.remaining_amount

    def __repr__(self) -> str:
        return f"<Credit(id={self.id}, remaining={self.remaining_amount}/{self.total_amount})>"


class CreditLedger(BaseModel):
    """Append-only: one credit application to one invoice within one run."""

    __tablename__ = "credit_ledger"

    credit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("credits.id"),
        nullable=False,
        index=True,
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("invoices.id"),
        nullable=False,
        index=True,
    )
    invoice_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("invoice_runs.id"),
        nullable=False,
        index=True,
    )
    applied_amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    credit_remaining_before: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    credit: Mapped["Credit"] = relationship(
        "Credit",
        back_populates="ledger_entries",
    )
