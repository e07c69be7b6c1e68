"""
Sieger Billing - Invoice Run Schemas

Pydantic schemas for creating, executing and locking invoice runs.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.invoice_run import InvoiceRunStatus


BILLING_MONTH_REGEX = r"^\d{4}-(0[1-9]|1[0-2])$"


# ===========================================
# REQUEST SCHEMAS
# ===========================================

class InvoiceRunCreateRequest(BaseModel):
    """Schema for queuing an invoice run."""
    billing_month: str = Field(..., pattern=BILLING_MONTH_REGEX, description="YYYY-MM")
    target_customer_id: Optional[UUID] = Field(None, description="Bill only this customer")
    ingestion_batch_id: Optional[UUID] = Field(None, description="Bill only rows of this batch")


class InvoiceRunExecuteRequest(BaseModel):
    """Optional selectors; when given they must match the run's own."""
    ingestion_batch_id: Optional[UUID] = None
    target_customer_id: Optional[UUID] = None


class InvoiceRunValidateRequest(BaseModel):
    """Schema for pre-run checks."""
    billing_month: str = Field(..., pattern=BILLING_MONTH_REGEX, description="YYYY-MM")
    target_customer_id: Optional[UUID] = Field(None, description="Check only this customer")


# ===========================================
# RESPONSE SCHEMAS
# ===========================================

class InvoiceRunResponse(BaseModel):
    """Schema for invoice run response."""
    id: UUID
    billing_month: str
    target_customer_id: Optional[UUID] = None
    ingestion_batch_id: Optional[UUID] = None
    source_key: str
    status: InvoiceRunStatus

    created_by: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None

    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class InvoiceRunCreateResponse(InvoiceRunResponse):
    """Created run; idempotent is true when an existing run was returned."""
    idempotent: bool = False


class InvoiceRunListResponse(BaseModel):
    """List of invoice runs response."""
    runs: List[InvoiceRunResponse]
    total: int
    page: int
    page_size: int


class InvoiceRunExecuteResponse(BaseModel):
    """Outcome of executing a run."""
    run: InvoiceRunResponse
    success: bool
    invoices_generated: int
    errors: List[Dict[str, Any]] = []
    summary: Dict[str, Any]


class RunValidationIssue(BaseModel):
    """One validation error or warning."""
    code: str
    message: str
    details: Optional[Any] = None


class InvoiceRunValidateResponse(BaseModel):
    """Pre-run checks; valid is false when any error was found."""
    valid: bool
    summary: Dict[str, Any]
    errors: List[RunValidationIssue] = []
    warnings: List[RunValidationIssue] = []
