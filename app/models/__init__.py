"""
Sieger Billing - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from app.models.base import BaseModel, TimestampMixin, utcnow
from app.models.customer import Customer, CustomerProject, CustomerStatus
from app.models.raw_cost import RawCostEntry, RawCostIngestionBatch
from app.models.sku import SkuGroup, SkuGroupMapping
from app.models.special_rule import (
    RuleLifecycle,
    SpecialRule,
    SpecialRuleEffectLedger,
    SpecialRuleType,
)
from app.models.pricing import (
    PricingList,
    PricingListStatus,
    PricingRule,
    PricingRuleType,
)
from app.models.credit import Credit, CreditLedger, CreditStatus, CreditType
from app.models.invoice_run import (
    ACTIVE_RUN_STATUSES,
    ALL_CUSTOMERS_SCOPE,
    RUN_TRANSITIONS,
    InvoiceRun,
    InvoiceRunStatus,
)
from app.models.audit import AuditAction, AuditLog
from app.models.invoice import (
    MIXED_CURRENCY,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
)

__all__ = [
    # Base
    "BaseModel",
    "TimestampMixin",
    "utcnow",
    # Customers
    "Customer",
    "CustomerProject",
    "CustomerStatus",
    # Raw costs
    "RawCostEntry",
    "RawCostIngestionBatch",
    # SKU groups
    "SkuGroup",
    "SkuGroupMapping",
    # Special rules
    "RuleLifecycle",
    "SpecialRule",
    "SpecialRuleEffectLedger",
    "SpecialRuleType",
    # Pricing
    "PricingList",
    "PricingListStatus",
    "PricingRule",
    "PricingRuleType",
    # Credits
    "Credit",
    "CreditLedger",
    "CreditStatus",
    "CreditType",
    # Invoice runs
    "ACTIVE_RUN_STATUSES",
    "ALL_CUSTOMERS_SCOPE",
    "RUN_TRANSITIONS",
    "InvoiceRun",
    "InvoiceRunStatus",
    # Invoices
    "MIXED_CURRENCY",
    "Invoice",
    "InvoiceLineItem",
    "InvoiceStatus",
    # Audit
    "AuditAction",
    "AuditLog",
]
