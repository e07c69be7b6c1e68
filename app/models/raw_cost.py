"""
Sieger Billing - Raw Cost Models

Imported cloud usage costs. Rows are written once by an ingestion batch and
never updated afterwards.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Uuid, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel


class RawCostIngestionBatch(BaseModel):
    """One import of raw cost rows, deduplicated by (checksum, month, source)."""

    __tablename__ = "raw_cost_ingestion_batches"
    __table_args__ = (
        UniqueConstraint("checksum", "month", "source"),
    )

    source: Mapped[str] = mapped_column(String(50), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    row_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    entries: Mapped[List["RawCostEntry"]] = relationship(
        "RawCostEntry",
        back_populates="ingestion_batch",
    )


class RawCostEntry(BaseModel):
    """Immutable usage-cost fact."""

    __tablename__ = "raw_cost_entries"

    ingestion_batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("raw_cost_ingestion_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    billing_account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    service_id: Mapped[str] = mapped_column(String(100), nullable=False)
    sku_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    usage_start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    usage_end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    usage_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=24, scale=6),
        nullable=False,
        default=Decimal("0"),
    )
    cost: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=6), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    region: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    ingestion_batch: Mapped["RawCostIngestionBatch"] = relationship(
        "RawCostIngestionBatch",
        back_populates="entries",
    )
