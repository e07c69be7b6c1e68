"""
Sieger Billing - Invoice Run Service

Top-level billing workflow.

- validate_run: read-only pre-run checks, reported as errors and warnings
- create_run: idempotent on (billing month, target customer, source key);
  refuses a LOCKED month (hard conflict) or a month with a run already
  QUEUED/RUNNING (soft conflict)
- execute_run: QUEUED -> RUNNING -> SUCCEEDED | FAILED. Special rules run for
  every customer first so rows moved between customers can be billed in the
  same run; then each customer is priced, credited and persisted in its own
  transaction. A failed customer is reported, already committed invoices of
  other customers are kept.
- lock_run: SUCCEEDED | FAILED -> LOCKED, locking every invoice the run
  committed
"""

import hashlib
import logging
import re
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import scoped_transaction
from app.models.audit import AuditAction
from app.models.base import utcnow
from app.models.customer import CustomerStatus
from app.models.invoice import MIXED_CURRENCY, Invoice, InvoiceLineItem, InvoiceStatus
from app.models.invoice_run import (
    ALL_CUSTOMERS_SCOPE,
    RUN_TRANSITIONS,
    InvoiceRun,
    InvoiceRunStatus,
)
from app.repositories.credit_repository import CreditRepository
from app.repositories.customer_repository import BillableCustomer, CustomerRepository
from app.repositories.invoice_repository import InvoiceRepository
from app.repositories.invoice_run_repository import InvoiceRunRepository
from app.repositories.pricing_repository import PricingRepository
from app.repositories.raw_cost_repository import RawCostRepository
from app.repositories.sku_group_repository import SkuGroupRepository
from app.repositories.special_rule_repository import SpecialRuleRepository
from app.services.audit_service import AuditService
from app.services.cost_entry import CostEntry
from app.services.credits_engine import CreditsEngine
from app.services.invoice_lock_service import mark_locked
from app.services.pricing_engine import (
    UNMAPPED_GROUP_CODE,
    PricingEngine,
    PricingResult,
    capture_pricing_snapshot,
)
from app.services.special_rules_engine import (
    SpecialRulesEngine,
    SpecialRulesResult,
    capture_special_rules_snapshot,
)
from app.utils.billing_month import BillingMonth
from app.utils.error_handling import (
    BillingMonthLockedException,
    ConflictException,
    CustomerNotFoundException,
    IngestionBatchNotFoundException,
    InvalidRunStateException,
    InvoiceRunNotFoundException,
    RunInProgressException,
    SelectorMismatchException,
    ValidationException,
)
from app.utils.money import ZERO, money_str, quantize_money, quantize_unit, unit_str

logger = logging.getLogger(__name__)


MAX_INVOICE_NUMBER_ATTEMPTS = 100


# ===========================================
# KEYS AND NUMBERS
# ===========================================

def _iso_utc(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def compute_source_key(
    billing_month: Union[str, BillingMonth],
    ingestion_batch_id: Optional[uuid.UUID] = None,
) -> str:
    """
    SHA-256 of the billing month and the cost-data selector.

    The selector is the ingestion batch when one is given, otherwise the
    month's [start, end) usage window.
    """
    month = BillingMonth.parse(billing_month)
    if ingestion_batch_id is not None:
        selector = f"batch:{ingestion_batch_id}"
    else:
        selector = f"time:{_iso_utc(month.start)}:{_iso_utc(month.end)}"
    return hashlib.sha256(f"{month}|{selector}".encode("utf-8")).hexdigest()


def customer_slug(customer: BillableCustomer) -> str:
    """First four alphanumerics of the external id (or name), upper-cased, X-padded."""
    source = customer.external_id or customer.name or ""
    return re.sub(r"[^A-Za-z0-9]", "", source).upper()[:4].ljust(4, "X")


def _check_selector(name: str, stored: Optional[uuid.UUID], provided: Optional[uuid.UUID]) -> None:
    if provided is not None and provided != stored:
        raise SelectorMismatchException(name, stored, provided)


# ===========================================
# RESULTS
# ===========================================

@dataclass
class CreateRunResult:
    run: InvoiceRun
    idempotent: bool = False


@dataclass
class ExecuteRunResult:
    run: InvoiceRun
    invoices_generated: int
    errors: List[Dict[str, Any]]
    metadata: Dict[str, Any]

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class RunValidation:
    """Pre-run checks. Errors block a run; warnings do not."""
    summary: Dict[str, Any]
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def error(self, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.errors.append({"code": code, "message": message, "details": details})

    def warning(self, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.warnings.append({"code": code, "message": message, "details": details})


def _run_reference(run: InvoiceRun) -> Dict[str, Any]:
    return {
        "id": str(run.id),
        "status": run.status.value,
        "created_at": run.created_at.isoformat() if run.created_at else None,
    }


@dataclass
class _PreparedCustomer:
    """A customer's rows after special rules, before pricing."""
    customer: BillableCustomer
    raw_entries: List[CostEntry]
    rules_result: SpecialRulesResult
    rules_snapshot: List[Dict[str, Any]]
    incoming: List[CostEntry] = field(default_factory=list)

    @property
    def billable_entries(self) -> List[CostEntry]:
        return self.rules_result.transformed_entries + self.incoming

    @property
    def has_rows(self) -> bool:
        return bool(self.raw_entries or self.incoming)


@dataclass
class _CustomerOutcome:
    invoice_id: uuid.UUID
    invoice_number: str
    currency: str
    currency_totals: Dict[str, Decimal]
    subtotal: Decimal
    discount: Decimal
    credits: Decimal
    total: Decimal


@dataclass
class _RunTotals:
    """Run metadata, accumulated as customers are processed."""
    customer_ids: Set[uuid.UUID] = field(default_factory=set)
    project_ids: Set[str] = field(default_factory=set)
    batch_ids: Set[uuid.UUID] = field(default_factory=set)
    row_count: int = 0
    time_from: Optional[datetime] = None
    time_to: Optional[datetime] = None
    currency_breakdown: Dict[str, Decimal] = field(default_factory=lambda: defaultdict(Decimal))
    raw_total: Decimal = ZERO
    special_rules_delta: Decimal = ZERO
    special_rules_count: int = 0
    priced_total: Decimal = ZERO
    discount_total: Decimal = ZERO
    credits_total: Decimal = ZERO
    final_total: Decimal = ZERO
    invoice_ids: List[str] = field(default_factory=list)
    unbilled_moves: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def observe(self, prepared: _PreparedCustomer) -> None:
        if prepared.has_rows:
            self.customer_ids.add(prepared.customer.id)
        self.row_count += len(prepared.raw_entries)
        for entry in prepared.raw_entries:
            self.project_ids.add(entry.project_id)
            if entry.ingestion_batch_id is not None:
                self.batch_ids.add(entry.ingestion_batch_id)
            if self.time_from is None or entry.usage_start_time < self.time_from:
                self.time_from = entry.usage_start_time
            if self.time_to is None or entry.usage_end_time > self.time_to:
                self.time_to = entry.usage_end_time
            self.raw_total += entry.cost
        self.special_rules_delta += prepared.rules_result.total_cost_delta
        self.special_rules_count += len(prepared.rules_result.rule_results)

    def add_outcome(self, outcome: _CustomerOutcome) -> None:
        for currency, amount in outcome.currency_totals.items():
            self.currency_breakdown[currency] += amount
        self.priced_total += outcome.subtotal
        self.discount_total += outcome.discount
        self.credits_total += outcome.credits
        self.final_total += outcome.total
        self.invoice_ids.append(str(outcome.invoice_id))

    def record_error(self, customer: BillableCustomer, stage: str, exc: Exception) -> None:
        self.errors.append({
            "customer_id": str(customer.id),
            "customer_name": customer.name,
            "stage": stage,
            "error": f"{type(exc).__name__}: {exc}",
        })

    @property
    def error_message(self) -> Optional[str]:
        if not self.errors:
            return None
        return "; ".join(f"{error['customer_name']}: {error['error']}" for error in self.errors)

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "customer_count": len(self.customer_ids),
            "project_count": len(self.project_ids),
            "row_count": self.row_count,
            "currency_breakdown": {
                currency: unit_str(amount) for currency, amount in sorted(self.currency_breakdown.items())
            },
            "ingestion_batch_ids": sorted(str(batch_id) for batch_id in self.batch_ids),
            "source_time_range": {
                "from": self.time_from.isoformat() if self.time_from else None,
                "to": self.time_to.isoformat() if self.time_to else None,
            },
            "raw_total": money_str(self.raw_total),
            "special_rules_delta": unit_str(self.special_rules_delta),
            "special_rules_count": self.special_rules_count,
            "priced_total": money_str(self.priced_total),
            "discount_total": money_str(self.discount_total),
            "credits_total": money_str(self.credits_total),
            "final_total": money_str(self.final_total),
            "invoice_count": len(self.invoice_ids),
            "invoice_ids": list(self.invoice_ids),
            "unbilled_moved_entries": list(self.unbilled_moves),
            "errors": list(self.errors),
        }


# ===========================================
# LINE ITEMS
# ===========================================

def _line_order(code: str) -> Tuple[bool, str]:
    return (code == UNMAPPED_GROUP_CODE, code)


def build_line_items(pricing: PricingResult) -> List[InvoiceLineItem]:
    """One line per SKU group; quantity is the number of rows in the group."""
    items = []
    for line_number, code in enumerate(sorted(pricing.sku_group_summary, key=_line_order), start=1):
        summary = pricing.sku_group_summary[code]
        quantity = Decimal(summary.entry_count)
        unit_price = quantize_unit(summary.priced_total / quantity) if summary.entry_count else ZERO
        items.append(
            InvoiceLineItem(
                line_number=line_number,
                description=(
                    "Unmapped SKUs" if code == UNMAPPED_GROUP_CODE else f"{code} services"
                ),
                sku_group_code=code,
                quantity=quantity,
                unit_price=unit_price,
                amount=quantize_money(summary.priced_total),
                line_metadata=summary.to_dict(),
            )
        )
    return items


def _invoice_currency(customer: BillableCustomer, currency_totals: Dict[str, Decimal]) -> str:
    if len(currency_totals) > 1:
        return MIXED_CURRENCY
    if currency_totals:
        return next(iter(currency_totals))
    return customer.currency


class InvoiceRunService:
    """Service for invoice run operations."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.runs = InvoiceRunRepository(db)
        self.invoices = InvoiceRepository(db)
        self.customers = CustomerRepository(db)
        self.raw_costs = RawCostRepository(db)
        self.special_rules = SpecialRulesEngine(SpecialRuleRepository(db), SkuGroupRepository(db))
        self.pricing = PricingEngine(PricingRepository(db))
        self.credits = CreditsEngine(CreditRepository(db))
        self.audit = AuditService(db)
        self.pricing_lists = PricingRepository(db)
        self.sku_groups = SkuGroupRepository(db)

    # ===========================================
    # QUERIES
    # ===========================================

    async def get_run(self, run_id: uuid.UUID) -> InvoiceRun:
        run = await self.runs.get(run_id, refresh=True)
        if run is None:
            raise InvoiceRunNotFoundException(run_id)
        return run

    async def list_runs(
        self,
        billing_month: Optional[str] = None,
        status: Optional[InvoiceRunStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[InvoiceRun], int]:
        if billing_month is not None:
            billing_month = str(BillingMonth.parse(billing_month))
        return await self.runs.list(billing_month=billing_month, status=status, page=page, page_size=page_size)

    # ===========================================
    # STATUS TRANSITIONS
    # ===========================================

    async def _transition(
        self,
        run_id: uuid.UUID,
        current: InvoiceRunStatus,
        new_status: InvoiceRunStatus,
        **values: Any,
    ) -> None:
        """Compare-and-set a status change allowed by RUN_TRANSITIONS."""
        if new_status not in RUN_TRANSITIONS[current]:
            raise InvalidRunStateException(run_id, current.value, new_status.value)
        if not await self.runs.compare_and_set_status(run_id, current, new_status, **values):
            run = await self.runs.get(run_id, refresh=True)
            actual = run.status.value if run else "MISSING"
            raise InvalidRunStateException(run_id, actual, new_status.value)

    # ===========================================
    # VALIDATE
    # ===========================================

    async def validate_run(
        self,
        billing_month: str,
        target_customer_id: Optional[uuid.UUID] = None,
    ) -> RunValidation:
        """
        Pre-run checks for a billing month. Writes nothing.

        Errors: MONTH_LOCKED, RUN_IN_PROGRESS, NO_COST_DATA, INVALID_CUSTOMER,
        NO_ACTIVE_CUSTOMERS. Warnings: PREVIOUS_RUN_EXISTS, UNASSIGNED_PROJECTS,
        UNMAPPED_SKUS, CUSTOMERS_WITHOUT_PRICING.
        """
        month = BillingMonth.parse(billing_month)
        month_key = str(month)

        project_costs = await self.raw_costs.cost_by_project(month)
        row_count = sum(count for _, count, _ in project_costs)
        customers = await self.customers.list_billable(month, target_customer_id)

        validation = RunValidation(summary={
            "billing_month": month_key,
            "target_customer_id": str(target_customer_id) if target_customer_id else None,
            "raw_cost_entry_count": row_count,
            "customer_count": len(customers),
        })

        # Existing runs
        locked = await self.runs.find_locked(month_key)
        if locked is not None:
            validation.error(
                "MONTH_LOCKED",
                f"Billing month {month_key} is already locked",
                _run_reference(locked),
            )

        active = await self.runs.find_active(month_key)
        if active is not None:
            validation.error(
                "RUN_IN_PROGRESS",
                f"Invoice run {active.id} is {active.status.value} for {month_key}",
                _run_reference(active),
            )

        previous = await self.runs.list_for_month(
            month_key,
            (InvoiceRunStatus.SUCCEEDED, InvoiceRunStatus.FAILED),
        )
        if previous:
            validation.warning(
                "PREVIOUS_RUN_EXISTS",
                f"{len(previous)} finished run(s) exist for {month_key}; running again creates new invoices",
                {"runs": [_run_reference(run) for run in previous]},
            )

        # Cost data
        if row_count == 0:
            validation.error("NO_COST_DATA", f"No raw cost data found for {month_key}")

        all_customers = customers if target_customer_id is None else await self.customers.list_billable(month)
        bound_projects = {project_id for customer in all_customers for project_id in customer.project_ids}
        unassigned = [
            (project_id, count, cost)
            for project_id, count, cost in project_costs
            if project_id not in bound_projects
        ]
        if unassigned:
            validation.warning(
                "UNASSIGNED_PROJECTS",
                f"{len(unassigned)} project(s) with costs are not assigned to any customer",
                {
                    "count": len(unassigned),
                    "total_cost": unit_str(sum((cost for _, _, cost in unassigned), ZERO)),
                    "projects": [
                        {"project_id": project_id, "row_count": count, "cost": unit_str(cost)}
                        for project_id, count, cost in unassigned
                    ],
                },
            )

        sku_costs = await self.raw_costs.cost_by_sku(month)
        memberships = await self.sku_groups.memberships_for(sku_id for sku_id, _, _ in sku_costs)
        unmapped = [
            (sku_id, service_id, cost)
            for sku_id, service_id, cost in sku_costs
            if sku_id not in memberships
        ]
        if unmapped:
            validation.warning(
                "UNMAPPED_SKUS",
                f"{len(unmapped)} SKU(s) are not mapped to any SKU group",
                {
                    "count": len(unmapped),
                    "total_cost": unit_str(sum((cost for _, _, cost in unmapped), ZERO)),
                    "skus": [
                        {"sku_id": sku_id, "service_id": service_id, "cost": unit_str(cost)}
                        for sku_id, service_id, cost in unmapped
                    ],
                },
            )

        # Customers
        if target_customer_id is not None:
            target = await self.customers.get(target_customer_id)
            if target is None or target.status != CustomerStatus.ACTIVE:
                validation.error(
                    "INVALID_CUSTOMER",
                    "Target customer not found or not active",
                    {"customer_id": str(target_customer_id)},
                )

        if not customers:
            validation.error(
                "NO_ACTIVE_CUSTOMERS",
                f"No active customers with project bindings in {month_key}",
            )

        priced = await self.pricing_lists.customers_with_active_list(customer.id for customer in customers)
        without_pricing = [customer for customer in customers if customer.id not in priced]
        if without_pricing:
            validation.warning(
                "CUSTOMERS_WITHOUT_PRICING",
                f"{len(without_pricing)} customer(s) have no active pricing list; list prices apply",
                {
                    "count": len(without_pricing),
                    "customers": [
                        {"id": str(customer.id), "name": customer.name} for customer in without_pricing
                    ],
                },
            )

        validation.summary["can_proceed"] = validation.valid
        logger.info(
            f"Validated invoice run for {month_key}: {len(validation.errors)} errors, "
            f"{len(validation.warnings)} warnings"
        )
        return validation

    # ===========================================
    # CREATE
    # ===========================================

    async def create_run(
        self,
        billing_month: str,
        target_customer_id: Optional[uuid.UUID] = None,
        ingestion_batch_id: Optional[uuid.UUID] = None,
        created_by: Optional[str] = None,
    ) -> CreateRunResult:
        """
        Create a QUEUED run, or return the existing run for the same
        (billing month, target customer, source key) with idempotent=True.
        """
        month = BillingMonth.parse(billing_month)
        month_key = str(month)

        if target_customer_id is not None and await self.customers.get(target_customer_id) is None:
            raise CustomerNotFoundException(target_customer_id)
        if ingestion_batch_id is not None:
            batch = await self.raw_costs.get_batch(ingestion_batch_id)
            if batch is None:
                raise IngestionBatchNotFoundException(ingestion_batch_id)
            if batch.month != month_key:
                raise ValidationException(
                    f"Ingestion batch {ingestion_batch_id} holds {batch.month} costs, not {month_key}",
                    field="ingestion_batch_id",
                    details={"batch_month": batch.month, "billing_month": month_key},
                )

        source_key = compute_source_key(month, ingestion_batch_id)
        scope_key = str(target_customer_id) if target_customer_id is not None else ALL_CUSTOMERS_SCOPE

        existing = await self.runs.find_by_key(month_key, scope_key, source_key)
        if existing is not None:
            logger.info(f"Invoice run {existing.id} for {month_key} already exists (idempotent)")
            return CreateRunResult(run=existing, idempotent=True)

        locked = await self.runs.find_locked(month_key)
        if locked is not None:
            logger.warning(f"Refusing new invoice run: {month_key} is locked by run {locked.id}")
            raise BillingMonthLockedException(month_key, locked.id)

        active = await self.runs.find_active(month_key)
        if active is not None:
            logger.warning(f"Refusing new invoice run: run {active.id} for {month_key} is {active.status.value}")
            raise RunInProgressException(month_key, active.id, active.status.value)

        run = InvoiceRun(
            id=uuid.uuid4(),
            billing_month=month_key,
            target_customer_id=target_customer_id,
            scope_key=scope_key,
            ingestion_batch_id=ingestion_batch_id,
            source_key=source_key,
            status=InvoiceRunStatus.QUEUED,
            created_by=created_by,
        )
        try:
            async with scoped_transaction(self.db):
                await self.runs.add(run)
                await self.audit.log_action(
                    AuditAction.RUN_CREATE,
                    "invoice_runs",
                    run.id,
                    actor=created_by,
                    new_values={
                        "billing_month": month_key,
                        "status": run.status,
                        "target_customer_id": target_customer_id,
                        "ingestion_batch_id": ingestion_batch_id,
                        "source_key": source_key,
                    },
                )
        except IntegrityError:
            # A concurrent request inserted the same key first
            existing = await self.runs.find_by_key(month_key, scope_key, source_key)
            if existing is None:
                raise
            logger.info(f"Invoice run {existing.id} for {month_key} created concurrently (idempotent)")
            return CreateRunResult(run=existing, idempotent=True)

        logger.info(f"Invoice run {run.id} queued for {month_key} by {created_by or 'system'}")
        return CreateRunResult(run=run, idempotent=False)

    # ===========================================
    # EXECUTE
    # ===========================================

    async def execute_run(
        self,
        run_id: uuid.UUID,
        ingestion_batch_id: Optional[uuid.UUID] = None,
        target_customer_id: Optional[uuid.UUID] = None,
        actor: Optional[str] = None,
    ) -> ExecuteRunResult:
        """
        Execute a QUEUED run.

        Selectors default to the run's own; passing one that differs from
        what the run was created with is a validation error.
        """
        run = await self.get_run(run_id)
        if run.status != InvoiceRunStatus.QUEUED:
            raise InvalidRunStateException(run.id, run.status.value, InvoiceRunStatus.RUNNING.value)
        _check_selector("ingestion_batch_id", run.ingestion_batch_id, ingestion_batch_id)
        _check_selector("target_customer_id", run.target_customer_id, target_customer_id)

        locked = await self.runs.find_locked(run.billing_month)
        if locked is not None:
            raise BillingMonthLockedException(run.billing_month, locked.id)

        # Plain copies; ORM state is expired by any per-customer rollback
        month = BillingMonth.parse(run.billing_month)
        scope_customer_id = run.target_customer_id
        batch_id = run.ingestion_batch_id

        async with scoped_transaction(self.db):
            await self._transition(
                run_id,
                InvoiceRunStatus.QUEUED,
                InvoiceRunStatus.RUNNING,
                started_at=utcnow(),
            )
            await self.audit.log_action(
                AuditAction.RUN_START,
                "invoice_runs",
                run_id,
                actor=actor,
                old_values={"status": InvoiceRunStatus.QUEUED},
                new_values={"status": InvoiceRunStatus.RUNNING, "billing_month": str(month)},
            )
        logger.info(f"Invoice run {run_id} for {month} started by {actor or 'system'}")

        totals = _RunTotals()
        try:
            await self._run_pipeline(run_id, month, scope_customer_id, batch_id, totals)
        except Exception as exc:
            logger.exception(f"Invoice run {run_id} aborted: {exc}")
            await self._mark_failed(run_id, totals, exc, actor)
            raise

        final_status = InvoiceRunStatus.FAILED if totals.errors else InvoiceRunStatus.SUCCEEDED
        metadata = totals.to_metadata()
        async with scoped_transaction(self.db):
            await self._transition(
                run_id,
                InvoiceRunStatus.RUNNING,
                final_status,
                finished_at=utcnow(),
                result=metadata,
                error_message=totals.error_message,
            )
            await self.audit.log_action(
                AuditAction.RUN_FAILED if totals.errors else AuditAction.RUN_COMPLETE,
                "invoice_runs",
                run_id,
                actor=actor,
                old_values={"status": InvoiceRunStatus.RUNNING},
                new_values={
                    "status": final_status,
                    "invoice_count": metadata["invoice_count"],
                    "final_total": metadata["final_total"],
                    "error_count": len(totals.errors),
                },
                description=totals.error_message,
            )

        run = await self.get_run(run_id)
        log = logger.error if totals.errors else logger.info
        log(
            f"Invoice run {run_id} {final_status.value}: {len(totals.invoice_ids)} invoices, "
            f"{len(totals.errors)} customer errors, final total {metadata['final_total']}"
        )
        return ExecuteRunResult(
            run=run,
            invoices_generated=len(totals.invoice_ids),
            errors=list(totals.errors),
            metadata=metadata,
        )

    async def _mark_failed(
        self,
        run_id: uuid.UUID,
        totals: _RunTotals,
        exc: Exception,
        actor: Optional[str] = None,
    ) -> None:
        """Best effort: record a fatal error on the run. The error is re-raised by the caller."""
        await self.db.rollback()
        metadata = totals.to_metadata()
        metadata["fatal_error"] = {"type": type(exc).__name__, "message": str(exc)}
        try:
            async with scoped_transaction(self.db):
                marked = await self.runs.compare_and_set_status(
                    run_id,
                    InvoiceRunStatus.RUNNING,
                    InvoiceRunStatus.FAILED,
                    finished_at=utcnow(),
                    result=metadata,
                    error_message=str(exc),
                )
                if marked:
                    await self.audit.log_action(
                        AuditAction.RUN_FAILED,
                        "invoice_runs",
                        run_id,
                        actor=actor,
                        old_values={"status": InvoiceRunStatus.RUNNING},
                        new_values={"status": InvoiceRunStatus.FAILED, "fatal_error": metadata["fatal_error"]},
                        description=str(exc),
                    )
        except SQLAlchemyError:
            logger.exception(f"Could not mark invoice run {run_id} as FAILED")

    async def _run_pipeline(
        self,
        run_id: uuid.UUID,
        month: BillingMonth,
        scope_customer_id: Optional[uuid.UUID],
        batch_id: Optional[uuid.UUID],
        totals: _RunTotals,
    ) -> None:
        customers = await self.customers.list_billable(month, scope_customer_id)
        if scope_customer_id is not None and not customers:
            logger.warning(f"Customer {scope_customer_id} has no active project bindings in {month}")

        # Stage 1: special rules for every customer, before any pricing
        prepared: Dict[uuid.UUID, _PreparedCustomer] = {}
        for customer in customers:
            try:
                prepared[customer.id] = await self._prepare_customer(customer, month, batch_id)
            except Exception as exc:
                await self.db.rollback()
                logger.exception(f"Special rules failed for customer {customer.name}: {exc}")
                totals.record_error(customer, "special_rules", exc)

        for source in prepared.values():
            for target_id, rows in source.rules_result.moved_entries.items():
                target = prepared.get(target_id)
                if target is not None:
                    target.incoming.extend(rows)
                    continue
                totals.unbilled_moves.append({
                    "from_customer_id": str(source.customer.id),
                    "target_customer_id": str(target_id),
                    "row_count": len(rows),
                    "cost": unit_str(sum((row.cost for row in rows), ZERO)),
                })
                logger.warning(
                    f"{len(rows)} rows moved from {source.customer.name} to customer {target_id}, "
                    f"which is not part of run {run_id}; left unbilled"
                )

        # Stage 2: pricing, invoice and credits, one transaction per customer
        for item in prepared.values():
            totals.observe(item)
            if not item.has_rows:
                continue
            try:
                async with scoped_transaction(self.db):
                    outcome = await self._bill_customer(run_id, month, item)
            except Exception as exc:
                logger.exception(f"Billing failed for customer {item.customer.name}: {exc}")
                totals.record_error(item.customer, "billing", exc)
                continue

            totals.add_outcome(outcome)
            logger.info(
                f"Generated invoice {outcome.invoice_number} for {item.customer.name}: "
                f"{outcome.total} {outcome.currency} (discount {outcome.discount}, credits {outcome.credits})"
            )

    async def _prepare_customer(
        self,
        customer: BillableCustomer,
        month: BillingMonth,
        batch_id: Optional[uuid.UUID],
    ) -> _PreparedCustomer:
        rows = await self.raw_costs.list_entries(customer.project_ids, month, batch_id)
        entries = await self.special_rules.attach_sku_groups([CostEntry.from_row(row) for row in rows])
        rules = await self.special_rules.load_applicable_special_rules(customer.id, month)
        result = self.special_rules.apply_special_rules(entries, rules, customer_id=customer.id)
        return _PreparedCustomer(
            customer=customer,
            raw_entries=entries,
            rules_result=result,
            rules_snapshot=capture_special_rules_snapshot(rules),
        )

    async def _bill_customer(
        self,
        run_id: uuid.UUID,
        month: BillingMonth,
        prepared: _PreparedCustomer,
    ) -> _CustomerOutcome:
        """Price, invoice and credit one customer. Runs inside the caller's transaction."""
        customer = prepared.customer
        entries = prepared.billable_entries
        rules_result = prepared.rules_result

        pricing_list, pricing_rules = await self.pricing.load_pricing_rules(customer.id)
        pricing = self.pricing.apply_pricing(
            entries,
            pricing_rules,
            pricing_list_id=pricing_list.id if pricing_list else None,
        )
        credit_snapshot = await self.credits.capture_credit_snapshot(customer.id, month)

        currency_totals: Dict[str, Decimal] = defaultdict(Decimal)
        for entry in entries:
            currency_totals[entry.currency] += entry.cost
        currency = _invoice_currency(customer, currency_totals)

        line_items = build_line_items(pricing)
        subtotal = sum((item.amount for item in line_items), ZERO)
        tax_amount = quantize_money(ZERO)
        raw_amount = sum(
            (quantize_money(summary.raw_total) for summary in pricing.sku_group_summary.values()),
            quantize_money(ZERO),
        )
        discount = raw_amount - subtotal

        moved_out: Dict[str, int] = {
            str(target_id): len(rows) for target_id, rows in rules_result.moved_entries.items()
        }
        metadata = {
            "currency_breakdown": {code: unit_str(amount) for code, amount in sorted(currency_totals.items())},
            "pricing": pricing.to_dict(),
            "special_rules": {
                "rules_applied": rules_result.rules_applied,
                "total_cost_delta": unit_str(rules_result.total_cost_delta),
                "excluded_row_count": len(rules_result.excluded_entries),
                "moved_out": moved_out,
                "moved_in_row_count": len(prepared.incoming),
            },
        }

        issue_date = utcnow().date()
        invoice = Invoice(
            id=uuid.uuid4(),
            invoice_run_id=run_id,
            customer_id=customer.id,
            billing_month=str(month),
            invoice_number=await self._generate_invoice_number(month, customer),
            status=InvoiceStatus.DRAFT,
            currency=currency,
            raw_amount=raw_amount,
            discount_amount=discount,
            subtotal=subtotal,
            tax_amount=tax_amount,
            credit_amount=quantize_money(ZERO),
            total_amount=subtotal + tax_amount,
            issue_date=issue_date,
            due_date=issue_date + timedelta(days=customer.payment_terms_days),
            invoice_metadata=metadata,
            config_snapshot={
                "billing_month": str(month),
                "captured_at": utcnow().isoformat(),
                "special_rules": prepared.rules_snapshot,
                "special_rules_applied": rules_result.rules_applied,
                "pricing": capture_pricing_snapshot(pricing_list, pricing_rules),
                "credits": credit_snapshot,
            },
            line_items=line_items,
        )
        await self.invoices.add(invoice)

        await self.special_rules.record_special_rule_effects(run_id, customer.id, rules_result)

        credit_result = await self.credits.apply_credits_to_invoice(
            customer.id,
            invoice.id,
            run_id,
            subtotal + tax_amount,
            month,
            currency=None if currency == MIXED_CURRENCY else currency,
        )
        invoice.credit_amount = credit_result.total_credits_applied
        invoice.total_amount = credit_result.final_amount
        invoice.invoice_metadata = {**metadata, "credits": credit_result.to_dict()}
        await self.db.flush()

        return _CustomerOutcome(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            currency=currency,
            currency_totals=dict(currency_totals),
            subtotal=subtotal,
            discount=discount,
            credits=credit_result.total_credits_applied,
            total=credit_result.final_amount,
        )

    async def _generate_invoice_number(self, month: BillingMonth, customer: BillableCustomer) -> str:
        """
        Next free number of the form PREFIX-YYYYMM-SLUG-NNNN.

        Format: INV-202401-ACME-0001
        """
        prefix = f"{settings.invoice_number_prefix}-{month.compact}-{customer_slug(customer)}-"
        sequence = await self.invoices.count_with_prefix(prefix) + 1
        for _ in range(MAX_INVOICE_NUMBER_ATTEMPTS):
            candidate = f"{prefix}{sequence:04d}"
            if not await self.invoices.number_exists(candidate):
                return candidate
            sequence += 1
        raise ConflictException(
            f"Could not allocate an invoice number for {customer.name} in {month}",
            resource_type="Invoice",
            details={"prefix": prefix},
        )

    # ===========================================
    # LOCK
    # ===========================================

    async def lock_run(self, run_id: uuid.UUID, actor: Optional[str] = None) -> InvoiceRun:
        """Lock a SUCCEEDED or FAILED run and every invoice it committed, in one transaction."""
        locked_at = utcnow()
        async with scoped_transaction(self.db):
            run = await self.runs.get(run_id, refresh=True)
            if run is None:
                raise InvoiceRunNotFoundException(run_id)
            previous_status = run.status
            await self._transition(
                run_id,
                previous_status,
                InvoiceRunStatus.LOCKED,
                locked_at=locked_at,
                locked_by=actor,
            )

            invoices = await self.invoices.list_for_run_for_update(run_id)
            newly_locked = 0
            for invoice in invoices:
                if invoice.is_locked:
                    continue
                previous_invoice_status = invoice.status
                mark_locked(invoice, actor, locked_at)
                newly_locked += 1
                await self.audit.log_action(
                    AuditAction.INVOICE_LOCK,
                    "invoices",
                    invoice.id,
                    actor=actor,
                    old_values={"status": previous_invoice_status},
                    new_values={"status": InvoiceStatus.LOCKED, "invoice_run_id": run_id},
                    description=f"Locked with invoice run {run_id}",
                )
            await self.db.flush()

            await self.audit.log_action(
                AuditAction.RUN_LOCK,
                "invoice_runs",
                run_id,
                actor=actor,
                old_values={"status": previous_status},
                new_values={"status": InvoiceRunStatus.LOCKED, "invoices_locked": newly_locked},
            )

        logger.info(f"Invoice run {run_id} locked by {actor or 'system'}; {newly_locked} invoices locked")
        return await self.get_run(run_id)
