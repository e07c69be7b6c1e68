"""
Sieger Billing - Routers Package

FastAPI route handlers.

Routers:
- raw_costs: Raw cost batch import
- invoice_runs: Invoice run create / execute / lock
- invoices: Invoice queries, lifecycle and locking
- audit_logs: Audit trail queries
"""

from app.routers import audit_logs, invoice_runs, invoices, raw_costs

__all__ = ["audit_logs", "invoice_runs", "invoices", "raw_costs"]
