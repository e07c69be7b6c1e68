"""
Error Handling Module for Sieger Billing

This module provides centralized error handling with:
- Custom exception hierarchy
- Standardized error responses
- Error logging
- Database error mapping
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID
import logging

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DataError,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("sieger.errors")


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (422)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_BILLING_MONTH = "INVALID_BILLING_MONTH"
    SELECTOR_MISMATCH = "SELECTOR_MISMATCH"

    # Resource Errors (404)
    NOT_FOUND = "NOT_FOUND"
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    INVOICE_NOT_FOUND = "INVOICE_NOT_FOUND"
    INVOICE_RUN_NOT_FOUND = "INVOICE_RUN_NOT_FOUND"
    INGESTION_BATCH_NOT_FOUND = "INGESTION_BATCH_NOT_FOUND"

    # Conflict Errors (409)
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    BILLING_MONTH_LOCKED = "BILLING_MONTH_LOCKED"
    RUN_IN_PROGRESS = "RUN_IN_PROGRESS"
    INVALID_RUN_STATE = "INVALID_RUN_STATE"
    INVOICE_ALREADY_LOCKED = "INVOICE_ALREADY_LOCKED"
    INVOICE_LOCKED = "INVOICE_LOCKED"
    INVALID_INVOICE_STATE = "INVALID_INVOICE_STATE"

    # Database Errors (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = _utc_timestamp()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """Base validation exception"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


class InvalidBillingMonthException(ValidationException):
    """Billing month is not a YYYY-MM calendar month"""

    def __init__(self, value: Any):
        super().__init__(
            message=f"Invalid billing month: {value!r}. Expected YYYY-MM.",
            field="billing_month",
            code=ErrorCode.INVALID_BILLING_MONTH,
            details={"provided": str(value), "expected_format": "YYYY-MM"},
        )


class SelectorMismatchException(ValidationException):
    """Execute-time selector contradicts the selector stored on the run"""

    def __init__(self, field: str, stored: Any, provided: Any):
        super().__init__(
            message=f"{field} {provided} does not match the run's {field} {stored}",
            field=field,
            code=ErrorCode.SELECTOR_MISMATCH,
            details={"stored": str(stored), "provided": str(provided)},
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Union[str, UUID]] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if message is None:
            if resource_id:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id) if resource_id else None},
        )


class CustomerNotFoundException(NotFoundException):
    """Customer not found"""

    def __init__(self, customer_id: Union[str, UUID]):
        super().__init__(
            resource_type="Customer",
            resource_id=customer_id,
            code=ErrorCode.CUSTOMER_NOT_FOUND,
        )


class InvoiceNotFoundException(NotFoundException):
    """Invoice not found"""

    def __init__(self, invoice_id: Union[str, UUID]):
        super().__init__(
            resource_type="Invoice",
            resource_id=invoice_id,
            code=ErrorCode.INVOICE_NOT_FOUND,
        )


class InvoiceRunNotFoundException(NotFoundException):
    """Invoice run not found"""

    def __init__(self, run_id: Union[str, UUID]):
        super().__init__(
            resource_type="InvoiceRun",
            resource_id=run_id,
            code=ErrorCode.INVOICE_RUN_NOT_FOUND,
        )


class IngestionBatchNotFoundException(NotFoundException):
    """Raw cost ingestion batch not found"""

    def __init__(self, batch_id: Union[str, UUID]):
        super().__init__(
            resource_type="RawCostIngestionBatch",
            resource_id=batch_id,
            code=ErrorCode.INGESTION_BATCH_NOT_FOUND,
        )


# ============================================================================
# Conflict Exceptions
# ============================================================================

class ConflictException(AppException):
    """
    Resource conflict exception.

    `conflict` is "hard" when retrying can never succeed (the month or invoice
    is frozen) and "soft" when the caller may retry once other work finishes.
    """

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
        conflict: str = "hard",
    ):
        _details = details or {}
        if resource_type:
            _details["resource_type"] = resource_type
        _details["conflict"] = conflict
        self.conflict = conflict
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


class BillingMonthLockedException(ConflictException):
    """A LOCKED run already exists for the billing month"""

    def __init__(self, billing_month: str, run_id: Union[str, UUID]):
        super().__init__(
            message=f"Billing month {billing_month} is locked",
            resource_type="InvoiceRun",
            code=ErrorCode.BILLING_MONTH_LOCKED,
            details={"billing_month": billing_month, "locked_run_id": str(run_id)},
            conflict="hard",
        )


class RunInProgressException(ConflictException):
    """A QUEUED or RUNNING run already exists for the billing month"""

    def __init__(self, billing_month: str, run_id: Union[str, UUID], run_status: str):
        super().__init__(
            message=f"An invoice run for {billing_month} is already {run_status}",
            resource_type="InvoiceRun",
            code=ErrorCode.RUN_IN_PROGRESS,
            details={
                "billing_month": billing_month,
                "active_run_id": str(run_id),
                "active_run_status": run_status,
            },
            conflict="soft",
        )


class InvalidRunStateException(ConflictException):
    """Run status transition not allowed"""

    def __init__(self, run_id: Union[str, UUID], current: str, requested: str):
        super().__init__(
            message=f"Invoice run cannot move from {current} to {requested}",
            resource_type="InvoiceRun",
            code=ErrorCode.INVALID_RUN_STATE,
            details={"run_id": str(run_id), "current_status": current, "requested_status": requested},
        )


class InvoiceAlreadyLockedException(ConflictException):
    """Lock requested on an invoice that is already locked"""

    def __init__(
        self,
        invoice_id: Union[str, UUID],
        locked_at: Optional[datetime] = None,
        locked_by: Optional[str] = None,
    ):
        super().__init__(
            message="Invoice is already locked",
            resource_type="Invoice",
            code=ErrorCode.INVOICE_ALREADY_LOCKED,
            details={
                "invoice_id": str(invoice_id),
                "locked_at": locked_at.isoformat() if locked_at else None,
                "locked_by": locked_by,
            },
        )


class InvoiceLockedException(ConflictException):
    """Mutation attempted on a locked invoice"""

    def __init__(self, invoice_id: Union[str, UUID], operation: str = "modify"):
        super().__init__(
            message=f"Cannot {operation} a locked invoice",
            resource_type="Invoice",
            code=ErrorCode.INVOICE_LOCKED,
            details={"invoice_id": str(invoice_id), "operation": operation},
        )


class InvalidInvoiceStateException(ConflictException):
    """Invoice status transition not allowed"""

    def __init__(self, invoice_id: Union[str, UUID], current: str, requested: str):
        super().__init__(
            message=f"Invoice cannot move from {current} to {requested}",
            resource_type="Invoice",
            code=ErrorCode.INVALID_INVOICE_STATE,
            details={"invoice_id": str(invoice_id), "current_status": current, "requested_status": requested},
        )


# ============================================================================
# Database Exceptions
# ============================================================================

class DatabaseException(AppException):
    """Database error exception"""

    def __init__(
        self,
        message: str = "A database error occurred",
        code: ErrorCode = ErrorCode.DATABASE_ERROR,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            original_error=original_error,
        )


# ============================================================================
# Exception Handlers
# ============================================================================

def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Create a standardized error response"""
    content = {
        "detail": {
            "code": code.value,
            "message": message,
            "timestamp": _utc_timestamp(),
        }
    }
    if field:
        content["detail"]["field"] = field
    if details:
        content["detail"]["details"] = details

    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle AppException"""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        f"AppException: {exc.code.value} - {exc.message}",
        extra={
            "code": exc.code.value,
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=exc.original_error,
    )

    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        field=exc.field,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException"""
    code_map = {
        400: ErrorCode.INVALID_INPUT,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.RESOURCE_CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        500: ErrorCode.INTERNAL_ERROR,
    }

    error_code = code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    logger.warning(
        f"HTTPException: {exc.status_code} - {message}",
        extra={"path": request.url.path, "method": request.method},
    )

    return create_error_response(
        code=error_code,
        message=message,
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors"""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    logger.warning(
        f"ValidationError: {len(errors)} validation errors",
        extra={"path": request.url.path, "method": request.method},
    )

    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy errors"""
    error_message = "A database error occurred"
    error_code = ErrorCode.DATABASE_ERROR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if isinstance(exc, IntegrityError):
        error_message = "Data integrity constraint violated"
        error_code = ErrorCode.DATA_INTEGRITY_ERROR
        error_str = str(exc.orig).lower() if exc.orig else ""
        if "unique" in error_str or "duplicate" in error_str:
            error_message = "A record with this value already exists"
            error_code = ErrorCode.DUPLICATE_ENTRY
            status_code = status.HTTP_409_CONFLICT
        elif "foreign key" in error_str:
            error_message = "Referenced record does not exist"
            status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, OperationalError):
        error_message = "Database operation failed"
        error_code = ErrorCode.CONNECTION_ERROR
    elif isinstance(exc, DataError):
        error_message = "Invalid data format for database"
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    logger.error(
        f"SQLAlchemyError: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=error_code,
        message=error_message,
        status_code=status_code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions"""
    logger.critical(
        f"UnhandledException: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


__all__ = [
    # Base
    "AppException",
    "ErrorCode",

    # Validation
    "ValidationException",
    "InvalidBillingMonthException",
    "SelectorMismatchException",

    # Resource
    "NotFoundException",
    "CustomerNotFoundException",
    "InvoiceNotFoundException",
    "InvoiceRunNotFoundException",
    "IngestionBatchNotFoundException",

    # Conflict
    "ConflictException",
    "BillingMonthLockedException",
    "RunInProgressException",
    "InvalidRunStateException",
    "InvoiceAlreadyLockedException",
    "InvoiceLockedException",
    "InvalidInvoiceStateException",

    # Database
    "DatabaseException",

    # Handlers
    "setup_exception_handlers",
    "create_error_response",
]
