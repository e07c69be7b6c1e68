"""
Sieger Billing - Invoice Schemas

Pydantic schemas for invoices produced by invoice runs.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.invoice import InvoiceStatus


# ===========================================
# REQUEST SCHEMAS
# ===========================================

class InvoiceUpdateRequest(BaseModel):
    """Schema for updating an invoice. Due date and tax only apply to drafts."""
    notes: Optional[str] = Field(None, max_length=5000)
    due_date: Optional[date] = None
    tax_amount: Optional[Decimal] = Field(None, ge=0)


# ===========================================
# RESPONSE SCHEMAS
# ===========================================

class InvoiceLineItemResponse(BaseModel):
    """Schema for invoice line item response."""
    id: UUID
    line_number: int
    description: str
    sku_group_code: Optional[str] = None
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="line_metadata")

    class Config:
        from_attributes = True


class InvoiceResponse(BaseModel):
    """Schema for invoice response."""
    id: UUID
    invoice_run_id: Optional[UUID] = None
    customer_id: UUID
    billing_month: str
    invoice_number: str
    status: InvoiceStatus
    currency: str

    # Amounts
    raw_amount: Decimal
    discount_amount: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    credit_amount: Decimal
    total_amount: Decimal

    # Dates
    issue_date: date
    due_date: date
    issued_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="invoice_metadata")
    config_snapshot: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None

    # Lock
    is_locked: bool
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None

    line_items: List[InvoiceLineItemResponse] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class InvoiceListResponse(BaseModel):
    """Schema for invoice list response."""
    invoices: List[InvoiceResponse]
    total: int
    page: int
    page_size: int


class InvoiceLockResponse(BaseModel):
    """Schema for invoice lock response."""
    id: UUID
    invoice_number: str
    status: InvoiceStatus
    locked_at: datetime
    locked_by: Optional[str] = None

    class Config:
        from_attributes = True
