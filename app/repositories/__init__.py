"""
Sieger Billing - Repositories

One repository per entity. Each wraps an AsyncSession handed in by the
caller; none of them commits, so the caller owns the transaction.
"""

from app.repositories.customer_repository import CustomerRepository, BillableCustomer
from app.repositories.raw_cost_repository import RawCostRepository
from app.repositories.sku_group_repository import SkuGroupRepository
from app.repositories.special_rule_repository import SpecialRuleRepository
from app.repositories.pricing_repository import PricingRepository
from app.repositories.credit_repository import CreditRepository
from app.repositories.invoice_run_repository import InvoiceRunRepository
from app.repositories.invoice_repository import InvoiceRepository

__all__ = [
    "BillableCustomer",
    "CustomerRepository",
    "RawCostRepository",
    "SkuGroupRepository",
    "SpecialRuleRepository",
    "PricingRepository",
    "CreditRepository",
    "InvoiceRunRepository",
    "InvoiceRepository",
]
