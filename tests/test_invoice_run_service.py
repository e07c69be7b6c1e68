"""
Sieger Billing - Invoice Run Service Tests

End-to-end tests for creating, executing and locking invoice runs.
"""

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest

from app.models.credit import Credit, CreditStatus
from app.models.customer import CustomerStatus
from app.models.invoice import MIXED_CURRENCY, InvoiceStatus
from app.models.invoice_run import RUN_TRANSITIONS, InvoiceRunStatus
from app.models.pricing import PricingRuleType
from app.models.special_rule import SpecialRuleType
from app.repositories.credit_repository import CreditRepository
from app.repositories.customer_repository import BillableCustomer
from app.repositories.invoice_repository import InvoiceRepository
from app.repositories.special_rule_repository import SpecialRuleRepository
from app.services.invoice_run_service import (
    InvoiceRunService,
    compute_source_key,
    customer_slug,
)
from app.utils.error_handling import (
    BillingMonthLockedException,
    CustomerNotFoundException,
    InvalidBillingMonthException,
    InvalidRunStateException,
    RunInProgressException,
    SelectorMismatchException,
    ValidationException,
)


async def seed_acme(billing_data):
    """
    Acme: vm 100 (COMPUTE, 10% off), egress 50 (no group), support 20
    (excluded by a special rule), and a 30.00 credit.
    """
    compute = await billing_data.sku_group("COMPUTE", sku_ids=["vm-standard"])
    acme = await billing_data.customer("Acme Corp", ["proj-acme"], external_id="acme-001")
    batch = await billing_data.batch()
    await billing_data.cost(batch, "proj-acme", "vm-standard", "100.00")
    await billing_data.cost(batch, "proj-acme", "egress", "50.00", day=9)
    await billing_data.cost(batch, "proj-acme", "support", "20.00", day=12)
    exclude = await billing_data.special_rule(
        "Waive support",
        SpecialRuleType.EXCLUDE_SKU,
        customer=acme,
        priority=1,
        match_sku_id="support",
    )
    await billing_data.pricing_list(acme, rules=[{
        "rule_type": PricingRuleType.LIST_DISCOUNT,
        "discount_rate": Decimal("0.9"),
        "sku_group_id": compute.id,
        "priority": 10,
    }])
    credit = await billing_data.credit(acme, "30.00")
    await billing_data.commit()
    return SimpleNamespace(acme=acme, batch=batch, compute=compute, exclude=exclude, credit=credit)


async def invoices_for(db_session, run_id):
    invoices, _ = await InvoiceRepository(db_session).list(invoice_run_id=run_id)
    return invoices


def fail_pricing_for(service, monkeypatch, project_id):
    """Make pricing raise for any customer billed for `project_id`."""
    apply_pricing = service.pricing.apply_pricing

    def failing_pricing(entries, rules, pricing_list_id=None):
        if any(entry.project_id == project_id for entry in entries):
            raise RuntimeError("pricing backend unavailable")
        return apply_pricing(entries, rules, pricing_list_id=pricing_list_id)

    monkeypatch.setattr(service.pricing, "apply_pricing", failing_pricing)


# ===========================================
# HELPERS
# ===========================================

class TestSourceKey:
    """Test cases for run idempotency keys."""

    def test_same_inputs_same_key(self):
        assert compute_source_key("2024-01") == compute_source_key("2024-01")

    def test_batch_and_time_window_differ(self):
        batch_id = uuid4()

        assert compute_source_key("2024-01", batch_id) != compute_source_key("2024-01")
        assert compute_source_key("2024-01", batch_id) != compute_source_key("2024-02", batch_id)

    def test_customer_slug(self):
        def customer(external_id, name):
            return BillableCustomer(
                id=uuid4(),
                name=name,
                external_id=external_id,
                currency="USD",
                payment_terms_days=30,
            )

        assert customer_slug(customer("acme-001", "Acme Corp")) == "ACME"
        assert customer_slug(customer(None, "B&Q")) == "BQXX"


# ===========================================
# CREATE
# ===========================================

class TestCreateRun:
    """Test cases for create_run."""

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, db_session):
        service = InvoiceRunService(db_session)

        first = await service.create_run("2024-01", created_by="ops@example.com")
        second = await service.create_run("2024-01")

        assert first.idempotent is False
        assert first.run.status == InvoiceRunStatus.QUEUED
        assert first.run.created_by == "ops@example.com"
        assert second.idempotent is True
        assert second.run.id == first.run.id

    @pytest.mark.asyncio
    async def test_invalid_billing_month(self, db_session):
        service = InvoiceRunService(db_session)

        with pytest.raises(InvalidBillingMonthException):
            await service.create_run("2024-13")

    @pytest.mark.asyncio
    async def test_unknown_target_customer(self, db_session):
        service = InvoiceRunService(db_session)

        with pytest.raises(CustomerNotFoundException):
            await service.create_run("2024-01", target_customer_id=uuid4())

    @pytest.mark.asyncio
    async def test_batch_from_another_month(self, db_session, billing_data):
        batch = await billing_data.batch(month="2023-12")
        await billing_data.commit()
        service = InvoiceRunService(db_session)

        with pytest.raises(ValidationException):
            await service.create_run("2024-01", ingestion_batch_id=batch.id)

    @pytest.mark.asyncio
    async def test_run_in_progress_is_soft_conflict(self, db_session, billing_data):
        batch = await billing_data.batch()
        await billing_data.commit()
        service = InvoiceRunService(db_session)
        queued = await service.create_run("2024-01")

        with pytest.raises(RunInProgressException) as exc_info:
            await service.create_run("2024-01", ingestion_batch_id=batch.id)

        assert exc_info.value.details["conflict"] == "soft"
        assert exc_info.value.details["active_run_id"] == str(queued.run.id)

    @pytest.mark.asyncio
    async def test_locked_month_is_hard_conflict(self, db_session, billing_data):
        data = await seed_acme(billing_data)
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")
        await service.execute_run(created.run.id)
        await service.lock_run(created.run.id, actor="controller")

        with pytest.raises(BillingMonthLockedException) as exc_info:
            await service.create_run("2024-01", ingestion_batch_id=data.batch.id)
        assert exc_info.value.details["conflict"] == "hard"

        # The identical request still returns the locked run unchanged
        repeat = await service.create_run("2024-01")
        assert repeat.idempotent is True
        assert repeat.run.status == InvoiceRunStatus.LOCKED


# ===========================================
# EXECUTE
# ===========================================

class TestExecuteRun:
    """Test cases for execute_run."""

    @pytest.mark.asyncio
    async def test_full_pipeline(self, db_session, billing_data):
        data = await seed_acme(billing_data)
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")

        result = await service.execute_run(created.run.id, actor="ops")

        assert result.success
        assert result.invoices_generated == 1
        assert result.run.status == InvoiceRunStatus.SUCCEEDED
        assert result.run.started_at is not None
        assert result.run.finished_at is not None

        (invoice,) = await invoices_for(db_session, created.run.id)
        assert invoice.customer_id == data.acme.id
        assert invoice.invoice_number == "INV-202401-ACME-0001"
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.currency == "USD"
        assert invoice.raw_amount == Decimal("150.00")
        assert invoice.subtotal == Decimal("140.00")
        assert invoice.discount_amount == Decimal("10.00")
        assert invoice.credit_amount == Decimal("30.00")
        assert invoice.total_amount == Decimal("110.00")
        assert invoice.due_date == invoice.issue_date + timedelta(days=30)

        assert [(line.sku_group_code, line.amount) for line in invoice.line_items] == [
            ("COMPUTE", Decimal("90.00")),
            ("UNMAPPED", Decimal("50.00")),
        ]
        assert invoice.line_items[0].quantity == Decimal("1")
        assert invoice.line_items[0].line_metadata["raw_total"] == "100.000000"

        snapshot = invoice.config_snapshot
        assert [rule["rule_id"] for rule in snapshot["special_rules"]] == [str(data.exclude.id)]
        assert Decimal(snapshot["pricing"]["rules"][0]["discount_rate"]) == Decimal("0.9")
        assert snapshot["credits"][0]["remaining_amount_before"] == "30.00"
        assert invoice.invoice_metadata["special_rules"]["excluded_row_count"] == 1
        assert invoice.invoice_metadata["credits"]["total_credits_applied"] == "30.00"

        summary = result.metadata
        assert summary["customer_count"] == 1
        assert summary["row_count"] == 3
        assert summary["raw_total"] == "170.00"
        assert summary["special_rules_delta"] == "-20.000000"
        assert summary["priced_total"] == "140.00"
        assert summary["discount_total"] == "10.00"
        assert summary["credits_total"] == "30.00"
        assert summary["final_total"] == "110.00"
        assert summary["currency_breakdown"] == {"USD": "150.000000"}
        assert summary["ingestion_batch_ids"] == [str(data.batch.id)]
        assert result.run.result["invoice_ids"] == [str(invoice.id)]

        await db_session.refresh(data.credit)
        assert data.credit.status == CreditStatus.DEPLETED

        (effect,) = await SpecialRuleRepository(db_session).list_effects(created.run.id)
        assert effect.rule_id == data.exclude.id
        assert effect.affected_row_count == 1
        assert effect.cost_delta == Decimal("-20")

    @pytest.mark.asyncio
    async def test_moved_rows_are_billed_to_target(self, db_session, billing_data):
        data = await seed_acme(billing_data)
        beta = await billing_data.customer("Beta", ["proj-beta"], external_id="beta")
        await billing_data.cost(data.batch, "proj-beta", "vm-standard", "10.00")
        await billing_data.special_rule(
            "Egress billed to Beta",
            SpecialRuleType.MOVE_TO_CUSTOMER,
            customer=data.acme,
            priority=2,
            match_sku_id="egress",
            target_customer_id=beta.id,
        )
        await billing_data.commit()
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")

        result = await service.execute_run(created.run.id)

        assert result.success
        invoices = {invoice.customer_id: invoice for invoice in await invoices_for(db_session, created.run.id)}
        assert invoices[data.acme.id].subtotal == Decimal("90.00")
        assert invoices[beta.id].subtotal == Decimal("60.00")
        assert invoices[beta.id].invoice_metadata["special_rules"]["moved_in_row_count"] == 1
        assert result.metadata["unbilled_moved_entries"] == []

    @pytest.mark.asyncio
    async def test_moved_rows_outside_run_scope_are_reported(self, db_session, billing_data):
        data = await seed_acme(billing_data)
        beta = await billing_data.customer("Beta", ["proj-beta"])
        await billing_data.special_rule(
            "Egress billed to Beta",
            SpecialRuleType.MOVE_TO_CUSTOMER,
            customer=data.acme,
            priority=2,
            match_sku_id="egress",
            target_customer_id=beta.id,
        )
        await billing_data.commit()
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01", target_customer_id=data.acme.id)

        result = await service.execute_run(created.run.id)

        (unbilled,) = result.metadata["unbilled_moved_entries"]
        assert unbilled["target_customer_id"] == str(beta.id)
        assert unbilled["row_count"] == 1
        assert len(await invoices_for(db_session, created.run.id)) == 1

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_other_invoices(self, db_session, billing_data, monkeypatch):
        data = await seed_acme(billing_data)
        await billing_data.customer("Beta", ["proj-beta"])
        await billing_data.cost(data.batch, "proj-beta", "vm-standard", "10.00")
        await billing_data.commit()
        acme_id = data.acme.id
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")
        # The failed customer's rollback expires every loaded instance
        run_id = created.run.id
        fail_pricing_for(service, monkeypatch, "proj-beta")

        result = await service.execute_run(run_id)

        assert not result.success
        assert result.run.status == InvoiceRunStatus.FAILED
        (error,) = result.errors
        assert error["customer_name"] == "Beta"
        assert error["stage"] == "billing"
        assert "pricing backend unavailable" in result.run.error_message

        (invoice,) = await invoices_for(db_session, run_id)
        assert invoice.customer_id == acme_id

    @pytest.mark.asyncio
    async def test_failure_after_credits_restores_credit(self, db_session, billing_data, monkeypatch):
        data = await seed_acme(billing_data)
        credit_id = data.credit.id
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")
        run_id = created.run.id

        apply_credits = service.credits.apply_credits_to_invoice

        async def apply_then_fail(*args, **kwargs):
            await apply_credits(*args, **kwargs)
            raise RuntimeError("invoice write failed after credits")

        monkeypatch.setattr(service.credits, "apply_credits_to_invoice", apply_then_fail)

        result = await service.execute_run(run_id)

        assert result.run.status == InvoiceRunStatus.FAILED
        (error,) = result.errors
        assert error["stage"] == "billing"
        assert result.invoices_generated == 0
        assert await invoices_for(db_session, run_id) == []

        credit = await db_session.get(Credit, credit_id, populate_existing=True)
        assert credit.remaining_amount == Decimal("30.00")
        assert credit.status == CreditStatus.ACTIVE
        assert await CreditRepository(db_session).list_ledger(credit_id) == []

    @pytest.mark.asyncio
    async def test_raw_amount_is_sum_of_rounded_lines(self, db_session, billing_data):
        await billing_data.sku_group("COMPUTE", sku_ids=["vm-standard"])
        await billing_data.sku_group("STORAGE", sku_ids=["disk"])
        await billing_data.customer("Tiny", ["proj-tiny"])
        batch = await billing_data.batch()
        await billing_data.cost(batch, "proj-tiny", "vm-standard", "0.005")
        await billing_data.cost(batch, "proj-tiny", "disk", "0.005")
        await billing_data.commit()
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")

        result = await service.execute_run(created.run.id)

        (invoice,) = await invoices_for(db_session, created.run.id)
        assert [(line.sku_group_code, line.amount) for line in invoice.line_items] == [
            ("COMPUTE", Decimal("0.01")),
            ("STORAGE", Decimal("0.01")),
        ]
        assert invoice.subtotal == Decimal("0.02")
        assert invoice.raw_amount == Decimal("0.02")
        assert invoice.discount_amount == Decimal("0.00")
        assert result.metadata["discount_total"] == "0.00"

    @pytest.mark.asyncio
    async def test_customer_without_rows_gets_no_invoice(self, db_session, billing_data):
        await seed_acme(billing_data)
        await billing_data.customer("Idle", ["proj-idle"])
        await billing_data.commit()
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")

        result = await service.execute_run(created.run.id)

        assert result.invoices_generated == 1
        assert result.metadata["customer_count"] == 1

    @pytest.mark.asyncio
    async def test_mixed_currencies(self, db_session, billing_data):
        customer = await billing_data.customer("Globex", ["proj-globex"])
        batch = await billing_data.batch()
        await billing_data.cost(batch, "proj-globex", "vm", "10.00", currency="USD")
        await billing_data.cost(batch, "proj-globex", "vm", "5.00", currency="EUR")
        await billing_data.commit()
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")

        result = await service.execute_run(created.run.id)

        (invoice,) = await invoices_for(db_session, created.run.id)
        assert invoice.customer_id == customer.id
        assert invoice.currency == MIXED_CURRENCY
        assert result.metadata["currency_breakdown"] == {"EUR": "5.000000", "USD": "10.000000"}

    @pytest.mark.asyncio
    async def test_batch_scoped_run_ignores_other_batches(self, db_session, billing_data):
        data = await seed_acme(billing_data)
        late_batch = await billing_data.batch()
        await billing_data.cost(late_batch, "proj-acme", "egress", "999.00")
        await billing_data.commit()
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01", ingestion_batch_id=data.batch.id)

        result = await service.execute_run(created.run.id, ingestion_batch_id=data.batch.id)

        assert result.metadata["row_count"] == 3

    @pytest.mark.asyncio
    async def test_selector_mismatch(self, db_session, billing_data):
        data = await seed_acme(billing_data)
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")

        with pytest.raises(SelectorMismatchException):
            await service.execute_run(created.run.id, ingestion_batch_id=data.batch.id)

        run = await service.get_run(created.run.id)
        assert run.status == InvoiceRunStatus.QUEUED

    @pytest.mark.asyncio
    async def test_run_executes_once(self, db_session, billing_data):
        await seed_acme(billing_data)
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")
        await service.execute_run(created.run.id)

        with pytest.raises(InvalidRunStateException):
            await service.execute_run(created.run.id)

        assert len(await invoices_for(db_session, created.run.id)) == 1


# ===========================================
# LOCK
# ===========================================

class TestLockRun:
    """Test cases for lock_run."""

    @pytest.mark.asyncio
    async def test_lock_run_locks_invoices(self, db_session, billing_data):
        await seed_acme(billing_data)
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")
        await service.execute_run(created.run.id)

        run = await service.lock_run(created.run.id, actor="controller")

        assert run.status == InvoiceRunStatus.LOCKED
        assert run.locked_by == "controller"
        (invoice,) = await invoices_for(db_session, created.run.id)
        assert invoice.status == InvoiceStatus.LOCKED
        assert invoice.locked_by == "controller"
        assert invoice.locked_at is not None

    def test_only_finished_runs_can_be_locked(self):
        can_lock = {
            status for status, targets in RUN_TRANSITIONS.items() if InvoiceRunStatus.LOCKED in targets
        }

        assert can_lock == {InvoiceRunStatus.SUCCEEDED, InvoiceRunStatus.FAILED}
        assert RUN_TRANSITIONS[InvoiceRunStatus.LOCKED] == frozenset()

    @pytest.mark.asyncio
    async def test_failed_run_locks_committed_invoices(self, db_session, billing_data, monkeypatch):
        data = await seed_acme(billing_data)
        await billing_data.customer("Beta", ["proj-beta"])
        await billing_data.cost(data.batch, "proj-beta", "vm-standard", "10.00")
        await billing_data.commit()
        acme_id = data.acme.id
        batch_id = data.batch.id
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")
        run_id = created.run.id
        fail_pricing_for(service, monkeypatch, "proj-beta")
        failed = await service.execute_run(run_id)
        assert failed.run.status == InvoiceRunStatus.FAILED

        run = await service.lock_run(run_id, actor="controller")

        assert run.status == InvoiceRunStatus.LOCKED
        assert run.locked_by == "controller"
        (invoice,) = await invoices_for(db_session, run_id)
        assert invoice.customer_id == acme_id
        assert invoice.status == InvoiceStatus.LOCKED
        assert invoice.locked_by == "controller"

        with pytest.raises(BillingMonthLockedException):
            await service.create_run("2024-01", ingestion_batch_id=batch_id)

    @pytest.mark.asyncio
    async def test_status_never_moves_backwards(self, db_session, billing_data):
        await seed_acme(billing_data)
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")

        with pytest.raises(InvalidRunStateException):
            await service.lock_run(created.run.id)

        await service.execute_run(created.run.id)
        await service.lock_run(created.run.id)

        with pytest.raises(InvalidRunStateException):
            await service.lock_run(created.run.id)
        with pytest.raises(InvalidRunStateException):
            await service.execute_run(created.run.id)

        run = await service.get_run(created.run.id)
        assert run.status == InvoiceRunStatus.LOCKED

    @pytest.mark.asyncio
    async def test_list_runs(self, db_session):
        service = InvoiceRunService(db_session)
        await service.create_run("2024-01")

        runs, total = await service.list_runs(billing_month="2024-01")
        other, other_total = await service.list_runs(billing_month="2024-02")

        assert total == 1
        assert runs[0].billing_month == "2024-01"
        assert other == [] and other_total == 0


# ===========================================
# VALIDATE
# ===========================================

def codes(issues):
    return sorted(issue["code"] for issue in issues)


class TestValidateRun:
    """Test cases for validate_run."""

    @pytest.mark.asyncio
    async def test_ready_month_is_valid(self, db_session, billing_data):
        await seed_acme(billing_data)
        service = InvoiceRunService(db_session)

        validation = await service.validate_run("2024-01")

        assert validation.valid
        assert validation.errors == []
        assert codes(validation.warnings) == ["UNMAPPED_SKUS"]
        (unmapped,) = validation.warnings
        assert [sku["sku_id"] for sku in unmapped["details"]["skus"]] == ["egress", "support"]
        assert unmapped["details"]["total_cost"] == "70.000000"
        assert validation.summary["raw_cost_entry_count"] == 3
        assert validation.summary["customer_count"] == 1
        assert validation.summary["can_proceed"] is True

    @pytest.mark.asyncio
    async def test_empty_month(self, db_session):
        service = InvoiceRunService(db_session)

        validation = await service.validate_run("2024-02")

        assert not validation.valid
        assert codes(validation.errors) == ["NO_ACTIVE_CUSTOMERS", "NO_COST_DATA"]
        assert validation.summary["can_proceed"] is False

    @pytest.mark.asyncio
    async def test_reports_existing_runs(self, db_session, billing_data):
        await seed_acme(billing_data)
        service = InvoiceRunService(db_session)
        created = await service.create_run("2024-01")

        queued = await service.validate_run("2024-01")
        assert codes(queued.errors) == ["RUN_IN_PROGRESS"]
        assert queued.errors[0]["details"]["id"] == str(created.run.id)

        await service.execute_run(created.run.id)
        finished = await service.validate_run("2024-01")
        assert finished.valid
        assert "PREVIOUS_RUN_EXISTS" in codes(finished.warnings)

        await service.lock_run(created.run.id)
        locked = await service.validate_run("2024-01")
        assert codes(locked.errors) == ["MONTH_LOCKED"]

    @pytest.mark.asyncio
    async def test_unassigned_projects_and_missing_pricing(self, db_session, billing_data):
        data = await seed_acme(billing_data)
        beta = await billing_data.customer("Beta", ["proj-beta"])
        await billing_data.cost(data.batch, "proj-beta", "vm-standard", "10.00")
        await billing_data.cost(data.batch, "proj-orphan", "vm-standard", "7.00")
        await billing_data.commit()
        beta_id = beta.id
        service = InvoiceRunService(db_session)

        validation = await service.validate_run("2024-01")

        assert validation.valid
        warnings = {warning["code"]: warning["details"] for warning in validation.warnings}
        assert warnings["UNASSIGNED_PROJECTS"]["projects"] == [
            {"project_id": "proj-orphan", "row_count": 1, "cost": "7.000000"},
        ]
        assert warnings["CUSTOMERS_WITHOUT_PRICING"]["customers"] == [
            {"id": str(beta_id), "name": "Beta"},
        ]

    @pytest.mark.asyncio
    async def test_invalid_target_customer(self, db_session, billing_data):
        await seed_acme(billing_data)
        suspended = await billing_data.customer("Old Co", ["proj-old"], status=CustomerStatus.SUSPENDED)
        await billing_data.commit()
        suspended_id = suspended.id
        service = InvoiceRunService(db_session)

        unknown = await service.validate_run("2024-01", target_customer_id=uuid4())
        inactive = await service.validate_run("2024-01", target_customer_id=suspended_id)

        assert codes(unknown.errors) == ["INVALID_CUSTOMER", "NO_ACTIVE_CUSTOMERS"]
        assert codes(inactive.errors) == ["INVALID_CUSTOMER", "NO_ACTIVE_CUSTOMERS"]
        assert inactive.errors[0]["details"]["customer_id"] == str(suspended_id)

    @pytest.mark.asyncio
    async def test_validation_writes_nothing(self, db_session, billing_data):
        await seed_acme(billing_data)
        service = InvoiceRunService(db_session)

        await service.validate_run("2024-01")

        runs, total = await service.list_runs(billing_month="2024-01")
        assert runs == [] and total == 0
