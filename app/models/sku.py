"""
Sieger Billing - SKU Group Models

Many-to-many grouping of catalog SKUs, used by special rules and pricing rules.
"""

import uuid
from typing import List, Optional

from sqlalchemy import ForeignKey, String, Text, Uuid, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel


class SkuGroup(BaseModel):
    """Named group of SKUs (e.g. COMPUTE, STORAGE)."""

    __tablename__ = "sku_groups"

    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    mappings: Mapped[List["SkuGroupMapping"]] = relationship(
        "SkuGroupMapping",
        back_populates="sku_group",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<SkuGroup(code={self.code})>"


class SkuGroupMapping(BaseModel):
    """Membership of one catalog SKU in one group."""

    __tablename__ = "sku_group_mappings"
    __table_args__ = (
        UniqueConstraint("sku_id", "sku_group_id"),
    )

    sku_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    sku_group_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sku_groups.id", ondelete="CASCADE"),
        nullable=False,
    )

    sku_group: Mapped["SkuGroup"] = relationship(
        "SkuGroup",
        back_populates="mappings",
    )
