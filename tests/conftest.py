"""
Sieger Billing - Test Configuration

Pytest fixtures and configuration.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.database import Base, get_async_session
from app.models.credit import Credit, CreditStatus, CreditType
from app.models.customer import Customer, CustomerProject, CustomerStatus
from app.models.invoice import Invoice, InvoiceLineItem, InvoiceStatus
from app.models.invoice_run import ALL_CUSTOMERS_SCOPE, InvoiceRun, InvoiceRunStatus
from app.models.pricing import PricingList, PricingListStatus, PricingRule, PricingRuleType
from app.models.raw_cost import RawCostEntry, RawCostIngestionBatch
from app.models.sku import SkuGroup, SkuGroupMapping
from app.models.special_rule import SpecialRule, SpecialRuleType
from main import app


# In-memory database shared by every connection of a test's engine
TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session
        await session.rollback()

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session override."""

    async def override_get_session():
        yield db_session

    app.dependency_overrides[get_async_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ===========================================
# DATA BUILDERS
# ===========================================

def usage_time(day: int, month: int = 1, year: int = 2024) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


class BillingData:
    """Creates billing fixtures in a session and commits them."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def commit(self) -> None:
        await self.session.commit()

    async def customer(
        self,
        name: str,
        project_ids=(),
        external_id: Optional[str] = None,
        currency: str = "USD",
        payment_terms_days: int = 30,
        status: CustomerStatus = CustomerStatus.ACTIVE,
    ) -> Customer:
        customer = Customer(
            id=uuid4(),
            name=name,
            external_id=external_id,
            currency=currency,
            payment_terms_days=payment_terms_days,
            status=status,
        )
        self.session.add(customer)
        for project_id in project_ids:
            self.session.add(
                CustomerProject(
                    customer_id=customer.id,
                    project_id=project_id,
                    start_date=date(2023, 1, 1),
                    is_active=True,
                )
            )
        await self.session.flush()
        return customer

    async def batch(self, month: str = "2024-01", source: str = "gcp") -> RawCostIngestionBatch:
        batch = RawCostIngestionBatch(
            id=uuid4(),
            source=source,
            month=month,
            row_count=0,
            checksum=uuid4().hex + uuid4().hex,
        )
        self.session.add(batch)
        await self.session.flush()
        return batch

    async def cost(
        self,
        batch: RawCostIngestionBatch,
        project_id: str,
        sku_id: str,
        cost: str,
        day: int = 5,
        month: int = 1,
        currency: str = "USD",
        service_id: str = "compute",
        billing_account_id: str = "BA-001",
    ) -> RawCostEntry:
        entry = RawCostEntry(
            id=uuid4(),
            ingestion_batch_id=batch.id,
            billing_account_id=billing_account_id,
            project_id=project_id,
            service_id=service_id,
            sku_id=sku_id,
            usage_start_time=usage_time(day, month),
            usage_end_time=usage_time(day + 1, month),
            usage_amount=Decimal("1"),
            cost=Decimal(cost),
            currency=currency,
        )
        self.session.add(entry)
        batch.row_count += 1
        await self.session.flush()
        return entry

    async def sku_group(self, code: str, sku_ids=()) -> SkuGroup:
        group = SkuGroup(id=uuid4(), code=code, name=code.title())
        self.session.add(group)
        for sku_id in sku_ids:
            self.session.add(SkuGroupMapping(sku_id=sku_id, sku_group_id=group.id))
        await self.session.flush()
        return group

    async def special_rule(
        self,
        name: str,
        rule_type: SpecialRuleType,
        customer: Optional[Customer] = None,
        priority: int = 100,
        **fields,
    ) -> SpecialRule:
        rule = SpecialRule(
            id=uuid4(),
            customer_id=customer.id if customer else None,
            name=name,
            rule_type=rule_type,
            priority=priority,
            **fields,
        )
        self.session.add(rule)
        await self.session.flush()
        return rule

    async def pricing_list(self, customer: Customer, rules=()) -> PricingList:
        pricing_list = PricingList(
            id=uuid4(),
            customer_id=customer.id,
            name=f"{customer.name} pricing",
            status=PricingListStatus.ACTIVE,
        )
        self.session.add(pricing_list)
        await self.session.flush()
        for fields in rules:
            self.session.add(PricingRule(pricing_list_id=pricing_list.id, **fields))
        await self.session.flush()
        return pricing_list

    async def credit(
        self,
        customer: Customer,
        amount: str,
        valid_from: date = date(2024, 1, 1),
        valid_to: Optional[date] = None,
        allow_carry_over: bool = False,
        currency: str = "USD",
        credit_type: CreditType = CreditType.PROMOTIONAL,
    ) -> Credit:
        credit = Credit(
            id=uuid4(),
            customer_id=customer.id,
            type=credit_type,
            total_amount=Decimal(amount),
            remaining_amount=Decimal(amount),
            currency=currency,
            valid_from=valid_from,
            valid_to=valid_to,
            allow_carry_over=allow_carry_over,
            status=CreditStatus.ACTIVE,
        )
        self.session.add(credit)
        await self.session.flush()
        return credit

    async def run(self, billing_month: str = "2024-01") -> InvoiceRun:
        run = InvoiceRun(
            id=uuid4(),
            billing_month=billing_month,
            scope_key=ALL_CUSTOMERS_SCOPE,
            source_key=uuid4().hex,
            status=InvoiceRunStatus.RUNNING,
        )
        self.session.add(run)
        await self.session.flush()
        return run

    async def invoice(
        self,
        customer: Customer,
        run: InvoiceRun,
        amount: str = "100.00",
        status: InvoiceStatus = InvoiceStatus.DRAFT,
    ) -> Invoice:
        invoice = Invoice(
            id=uuid4(),
            invoice_run_id=run.id,
            customer_id=customer.id,
            billing_month=run.billing_month,
            invoice_number=f"INV-TEST-{uuid4().hex[:8].upper()}",
            status=status,
            currency=customer.currency,
            raw_amount=Decimal(amount),
            discount_amount=Decimal("0.00"),
            subtotal=Decimal(amount),
            tax_amount=Decimal("0.00"),
            credit_amount=Decimal("0.00"),
            total_amount=Decimal(amount),
            issue_date=date(2024, 2, 1),
            due_date=date(2024, 3, 2),
            line_items=[
                InvoiceLineItem(
                    line_number=1,
                    description="COMPUTE services",
                    sku_group_code="COMPUTE",
                    quantity=Decimal("1"),
                    unit_price=Decimal(amount),
                    amount=Decimal(amount),
                )
            ],
        )
        self.session.add(invoice)
        await self.session.flush()
        return invoice


@pytest.fixture
def billing_data(db_session: AsyncSession) -> BillingData:
    return BillingData(db_session)
