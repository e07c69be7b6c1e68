"""
Sieger Billing - Invoice Service Tests

Tests for invoice locking, the lock guard and the invoice lifecycle.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from app.models.invoice import InvoiceLineItem, InvoiceStatus
from app.services.invoice_lock_service import InvoiceLockService
from app.services.invoice_service import InvoiceService
from app.utils.error_handling import (
    InvalidInvoiceStateException,
    InvoiceAlreadyLockedException,
    InvoiceLockedException,
    InvoiceNotFoundException,
    ValidationException,
)


@pytest.fixture
async def draft_invoice(billing_data):
    customer = await billing_data.customer("Acme")
    run = await billing_data.run()
    invoice = await billing_data.invoice(customer, run, "100.00")
    await billing_data.commit()
    return invoice


@pytest.fixture
async def locked_invoice(db_session, draft_invoice):
    return await InvoiceLockService(db_session).lock(draft_invoice.id, actor="controller")


# ===========================================
# LOCKING
# ===========================================

class TestInvoiceLock:
    """Test cases for InvoiceLockService."""

    @pytest.mark.asyncio
    async def test_lock_sets_lock_fields(self, locked_invoice):
        assert locked_invoice.status == InvoiceStatus.LOCKED
        assert locked_invoice.locked_by == "controller"
        assert locked_invoice.locked_at is not None
        assert locked_invoice.is_locked

    @pytest.mark.asyncio
    async def test_second_lock_is_a_conflict(self, db_session, locked_invoice):
        invoice_id = locked_invoice.id

        with pytest.raises(InvoiceAlreadyLockedException) as exc_info:
            await InvoiceLockService(db_session).lock(invoice_id, actor="someone-else")

        assert exc_info.value.details["locked_by"] == "controller"
        assert exc_info.value.details["locked_at"] is not None

    @pytest.mark.asyncio
    async def test_lock_unknown_invoice(self, db_session):
        with pytest.raises(InvoiceNotFoundException):
            await InvoiceLockService(db_session).lock(uuid4())


class TestLockGuard:
    """Direct ORM changes to a locked invoice never reach the database."""

    @pytest.mark.asyncio
    async def test_modifying_locked_invoice_is_refused(self, db_session, locked_invoice):
        invoice_id = locked_invoice.id
        locked_invoice.total_amount = Decimal("1.00")

        with pytest.raises(InvoiceLockedException):
            await db_session.commit()
        await db_session.rollback()

        invoice = await InvoiceService(db_session).get_invoice(invoice_id)
        assert invoice.total_amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_adding_line_item_to_locked_invoice_is_refused(self, db_session, locked_invoice):
        db_session.add(
            InvoiceLineItem(
                invoice_id=locked_invoice.id,
                line_number=2,
                description="Late adjustment",
                quantity=Decimal("1"),
                unit_price=Decimal("5.00"),
                amount=Decimal("5.00"),
            )
        )

        with pytest.raises(InvoiceLockedException):
            await db_session.commit()
        await db_session.rollback()

    @pytest.mark.asyncio
    async def test_deleting_locked_invoice_is_refused(self, db_session, locked_invoice):
        await db_session.delete(locked_invoice)

        with pytest.raises(InvoiceLockedException):
            await db_session.commit()
        await db_session.rollback()

    @pytest.mark.asyncio
    async def test_draft_invoice_can_be_changed(self, db_session, draft_invoice):
        draft_invoice.notes = "Reviewed"

        await db_session.commit()

        assert draft_invoice.notes == "Reviewed"


# ===========================================
# LIFECYCLE
# ===========================================

class TestInvoiceLifecycle:
    """Test cases for InvoiceService transitions and updates."""

    @pytest.mark.asyncio
    async def test_issue_then_pay(self, db_session, draft_invoice):
        service = InvoiceService(db_session)

        issued = await service.issue_invoice(draft_invoice.id)
        assert issued.status == InvoiceStatus.ISSUED
        assert issued.issued_at is not None

        paid = await service.mark_paid(draft_invoice.id)
        assert paid.status == InvoiceStatus.PAID
        assert paid.paid_at is not None

    @pytest.mark.asyncio
    async def test_draft_cannot_be_paid(self, db_session, draft_invoice):
        service = InvoiceService(db_session)

        with pytest.raises(InvalidInvoiceStateException):
            await service.mark_paid(draft_invoice.id)

    @pytest.mark.asyncio
    async def test_cancelled_invoice_stays_cancelled(self, db_session, draft_invoice):
        service = InvoiceService(db_session)
        await service.cancel_invoice(draft_invoice.id)

        with pytest.raises(InvalidInvoiceStateException):
            await service.issue_invoice(draft_invoice.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["issue_invoice", "mark_paid", "cancel_invoice"])
    async def test_locked_invoice_refuses_transitions(self, db_session, locked_invoice, operation):
        service = InvoiceService(db_session)

        with pytest.raises(InvoiceLockedException):
            await getattr(service, operation)(locked_invoice.id)

    @pytest.mark.asyncio
    async def test_locked_invoice_refuses_updates(self, db_session, locked_invoice):
        service = InvoiceService(db_session)

        with pytest.raises(InvoiceLockedException) as exc_info:
            await service.update_invoice(locked_invoice.id, notes="too late")

        assert exc_info.value.details["operation"] == "modify"

    @pytest.mark.asyncio
    async def test_tax_recomputes_total(self, db_session, billing_data, draft_invoice):
        draft_invoice.credit_amount = Decimal("30.00")
        await billing_data.commit()
        service = InvoiceService(db_session)

        invoice = await service.update_invoice(draft_invoice.id, tax_amount=Decimal("8.25"))

        assert invoice.tax_amount == Decimal("8.25")
        assert invoice.total_amount == Decimal("78.25")

    @pytest.mark.asyncio
    async def test_due_date_before_issue_date(self, db_session, draft_invoice):
        service = InvoiceService(db_session)

        with pytest.raises(ValidationException):
            await service.update_invoice(draft_invoice.id, due_date=date(2024, 1, 1))

    @pytest.mark.asyncio
    async def test_issued_invoice_only_accepts_notes(self, db_session, draft_invoice):
        service = InvoiceService(db_session)
        await service.issue_invoice(draft_invoice.id)

        with pytest.raises(InvalidInvoiceStateException):
            await service.update_invoice(draft_invoice.id, tax_amount=Decimal("1.00"))

        invoice = await service.update_invoice(draft_invoice.id, notes="Sent to AP")
        assert invoice.notes == "Sent to AP"

    @pytest.mark.asyncio
    async def test_list_invoices_by_month(self, db_session, draft_invoice):
        service = InvoiceService(db_session)

        invoices, total = await service.list_invoices(billing_month="2024-01")

        assert total == 1
        assert invoices[0].id == draft_invoice.id
