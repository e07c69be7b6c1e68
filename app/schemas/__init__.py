"""
Sieger Billing - Schemas Package

Pydantic schemas for request/response validation.
"""

from app.schemas.audit import AuditLogListResponse, AuditLogResponse, EntityHistoryResponse
from app.schemas.invoice import (
    InvoiceLineItemResponse,
    InvoiceListResponse,
    InvoiceLockResponse,
    InvoiceResponse,
    InvoiceUpdateRequest,
)
from app.schemas.invoice_run import (
    InvoiceRunCreateRequest,
    InvoiceRunCreateResponse,
    InvoiceRunExecuteRequest,
    InvoiceRunExecuteResponse,
    InvoiceRunListResponse,
    InvoiceRunResponse,
    InvoiceRunValidateRequest,
    InvoiceRunValidateResponse,
    RunValidationIssue,
)
from app.schemas.raw_cost import (
    RawCostBatchResponse,
    RawCostEntryRequest,
    RawCostImportRequest,
)

__all__ = [
    "AuditLogListResponse",
    "AuditLogResponse",
    "EntityHistoryResponse",
    "InvoiceLineItemResponse",
    "InvoiceListResponse",
    "InvoiceLockResponse",
    "InvoiceResponse",
    "InvoiceUpdateRequest",
    "InvoiceRunCreateRequest",
    "InvoiceRunCreateResponse",
    "InvoiceRunExecuteRequest",
    "InvoiceRunExecuteResponse",
    "InvoiceRunListResponse",
    "InvoiceRunResponse",
    "InvoiceRunValidateRequest",
    "InvoiceRunValidateResponse",
    "RunValidationIssue",
    "RawCostBatchResponse",
    "RawCostEntryRequest",
    "RawCostImportRequest",
]
