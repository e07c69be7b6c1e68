"""
Sieger Billing - Special Rule Models

Pre-pricing rules that exclude, re-price or re-assign raw cost rows, and the
append-only ledger of what each rule did during a run.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Integer, JSON, Numeric, String, Uuid,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel


class SpecialRuleType(str, Enum):
    """What a matching rule does to a cost row."""
    EXCLUDE_SKU = "EXCLUDE_SKU"
    EXCLUDE_SKU_GROUP = "EXCLUDE_SKU_GROUP"
    OVERRIDE_COST = "OVERRIDE_COST"
    MOVE_TO_CUSTOMER = "MOVE_TO_CUSTOMER"


class RuleLifecycle(str, Enum):
    """Retired rules are kept for audit but never loaded for a run."""
    ACTIVE = "ACTIVE"
    RETIRED = "RETIRED"


class SpecialRule(BaseModel):
    """
    Special rule.

    customer_id = NULL makes the rule global. Every non-NULL match_* column
    must equal the cost row's field for the rule to match.
    """

    __tablename__ = "special_rules"

    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    rule_type: Mapped[SpecialRuleType] = mapped_column(SQLEnum(SpecialRuleType), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Match predicates
    match_sku_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    match_sku_group_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sku_groups.id", ondelete="SET NULL"),
        nullable=True,
    )
    match_service_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    match_project_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    match_billing_account_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Type-specific parameters
    cost_multiplier: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=10, scale=6),
        nullable=True,
    )
    target_customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
    )

    effective_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    effective_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    lifecycle: Mapped[RuleLifecycle] = mapped_column(
        SQLEnum(RuleLifecycle),
        default=RuleLifecycle.ACTIVE,
        nullable=False,
        index=True,
    )
    retired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<SpecialRule(id={self.id}, name={self.name}, type={self.rule_type})>"


class SpecialRuleEffectLedger(BaseModel):
    """
    Append-only audit row: what one rule did to one customer's costs in one run.
    """

    __tablename__ = "special_rule_effect_ledger"

    invoice_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("invoice_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    rule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("special_rules.id"),
        nullable=False,
        index=True,
    )
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id"),
        nullable=True,
    )
    affected_row_count: Mapped[int] = mapped_column(Integer, nullable=False)
    cost_delta: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=6), nullable=False)
    # {"by_project": {...}, "by_sku": {...}}
    summary: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
