"""
Sieger Billing - Services Package

Business logic services.
"""

from app.services.cost_entry import CostEntry
from app.services.special_rules_engine import SpecialRulesEngine, SpecialRulesResult, apply_special_rules
from app.services.pricing_engine import PricingEngine, PricingResult, apply_pricing
from app.services.credits_engine import CreditsEngine, CreditApplicationResult
from app.services.invoice_lock_service import InvoiceLockService
from app.services.invoice_service import InvoiceService
from app.services.invoice_run_service import InvoiceRunService, compute_source_key
from app.services.raw_cost_import_service import RawCostImportService

__all__ = [
    "CostEntry",
    "SpecialRulesEngine",
    "SpecialRulesResult",
    "apply_special_rules",
    "PricingEngine",
    "PricingResult",
    "apply_pricing",
    "CreditsEngine",
    "CreditApplicationResult",
    "InvoiceLockService",
    "InvoiceService",
    "InvoiceRunService",
    "compute_source_key",
    "RawCostImportService",
]
