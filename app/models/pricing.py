"""
Sieger Billing - Pricing Models

Customer pricing lists and the discount rules they hold.
"""

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import Date, ForeignKey, Integer, JSON, Numeric, String, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel


class PricingListStatus(str, Enum):
    """Only one ACTIVE list per customer is used for pricing."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class PricingRuleType(str, Enum):
    """How a pricing rule turns list cost into priced cost."""
    LIST_DISCOUNT = "LIST_DISCOUNT"   # priced = cost * discount_rate
    TIERED = "TIERED"                 # rate picked from tiers by cost


class PricingList(BaseModel):
    """Pricing list owned by one customer."""

    __tablename__ = "pricing_lists"

    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[PricingListStatus] = mapped_column(
        SQLEnum(PricingListStatus),
        default=PricingListStatus.DRAFT,
        nullable=False,
    )

    rules: Mapped[List["PricingRule"]] = relationship(
        "PricingRule",
        back_populates="pricing_list",
        cascade="all, delete-orphan",
    )


class PricingRule(BaseModel):
    """
    Pricing rule.

    discount_rate is the fraction of list price retained (0.90 = 10% off).
    sku_group_id = NULL makes the rule a catch-all for the list.
    tiers is a list of {"from", "to", "rate"} objects for TIERED rules; "to"
    is exclusive and may be null for an unbounded top tier.
    """

    __tablename__ = "pricing_rules"

    pricing_list_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pricing_lists.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    rule_type: Mapped[PricingRuleType] = mapped_column(
        SQLEnum(PricingRuleType),
        default=PricingRuleType.LIST_DISCOUNT,
        nullable=False,
    )
    discount_rate: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=10, scale=6),
        nullable=True,
    )
    tiers: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    sku_group_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sku_groups.id", ondelete="SET NULL"),
        nullable=True,
    )
    effective_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    effective_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)

    pricing_list: Mapped["PricingList"] = relationship(
        "PricingList",
        back_populates="rules",
    )

    def __repr__(self) -> str:
        return f"<PricingRule(id={self.id}, type={self.rule_type}, rate={self.discount_rate})>"
