"""
Sieger Billing - Raw Cost Schemas

Pydantic schemas for bulk raw cost imports.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.invoice_run import BILLING_MONTH_REGEX


class RawCostEntryRequest(BaseModel):
    """One usage-cost row."""
    billing_account_id: str = Field(..., min_length=1, max_length=100)
    project_id: str = Field(..., min_length=1, max_length=100)
    service_id: str = Field(..., min_length=1, max_length=100)
    sku_id: str = Field(..., min_length=1, max_length=100)
    usage_start_time: datetime
    usage_end_time: datetime
    usage_amount: Decimal = Field(Decimal("0"), ge=0)
    cost: Decimal
    currency: str = Field(..., min_length=3, max_length=3)
    region: Optional[str] = Field(None, max_length=50)


class RawCostImportRequest(BaseModel):
    """Schema for importing a batch of raw cost rows."""
    source: str = Field("gcp", min_length=1, max_length=50)
    month: Optional[str] = Field(None, pattern=BILLING_MONTH_REGEX, description="Derived from the first entry when omitted")
    entries: List[RawCostEntryRequest] = Field(..., max_length=50000)


class RawCostBatchResponse(BaseModel):
    """Schema for an ingestion batch."""
    id: UUID
    source: str
    month: str
    row_count: int
    checksum: str
    created_by: Optional[str] = None
    created_at: datetime
    idempotent: bool = False

    class Config:
        from_attributes = True
