"""
Sieger Billing - Customer Repository
"""

import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.customer import Customer, CustomerProject, CustomerStatus
from app.utils.billing_month import BillingMonth


@dataclass
class BillableCustomer:
    """Plain snapshot of a customer taking part in a run."""

    id: uuid.UUID
    name: str
    external_id: Optional[str]
    currency: str
    payment_terms_days: int
    project_ids: List[str] = field(default_factory=list)


class CustomerRepository:
    """Data access for customers and their project bindings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, customer_id: uuid.UUID) -> Optional[Customer]:
        return await self.db.get(Customer, customer_id)

    async def list_billable(
        self,
        billing_month: BillingMonth,
        customer_id: Optional[uuid.UUID] = None,
    ) -> List[BillableCustomer]:
        """
        ACTIVE customers with at least one active project binding that
        overlaps the billing month, with the bound project ids.
        """
        query = (
            select(Customer, CustomerProject.project_id)
            .join(CustomerProject, CustomerProject.customer_id == Customer.id)
            .where(Customer.status == CustomerStatus.ACTIVE)
            .where(CustomerProject.is_active.is_(True))
            .where(
                or_(
                    CustomerProject.start_date.is_(None),
                    CustomerProject.start_date <= billing_month.last_day,
                )
            )
            .where(
                or_(
                    CustomerProject.end_date.is_(None),
                    CustomerProject.end_date >= billing_month.first_day,
                )
            )
            .order_by(Customer.name, Customer.id, CustomerProject.project_id)
        )
        if customer_id is not None:
            query = query.where(Customer.id == customer_id)

        result = await self.db.execute(query)

        customers: Dict[uuid.UUID, BillableCustomer] = {}
        for customer, project_id in result.all():
            billable = customers.get(customer.id)
            if billable is None:
                billable = BillableCustomer(
                    id=customer.id,
                    name=customer.name,
                    external_id=customer.external_id,
                    currency=customer.currency,
                    payment_terms_days=customer.payment_terms_days,
                )
                customers[customer.id] = billable
            if project_id not in billable.project_ids:
                billable.project_ids.append(project_id)
        return list(customers.values())
