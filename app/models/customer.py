"""
Sieger Billing - Customer Models

Customers and the cloud projects bound to them. A customer's raw costs are
the cost rows of every project bound to it during the billing month.
"""

import uuid
from datetime import date
from enum import Enum
from typing import List, Optional

from sqlalchemy import Boolean, Date, ForeignKey, Integer, String, Uuid, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel


class CustomerStatus(str, Enum):
    """Customer lifecycle status."""
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    TERMINATED = "TERMINATED"


class Customer(BaseModel):
    """
    Customer model.

    Only ACTIVE customers are picked up by invoice runs.
    """

    __tablename__ = "customers"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        unique=True,
    )
    status: Mapped[CustomerStatus] = mapped_column(
        SQLEnum(CustomerStatus),
        default=CustomerStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    payment_terms_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)

    projects: Mapped[List["CustomerProject"]] = relationship(
        "CustomerProject",
        back_populates="customer",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, name={self.name})>"


class CustomerProject(BaseModel):
    """
    Binding of a cloud project to a customer.

    An open start_date means "since forever", an open end_date means
    "still bound".
    """

    __tablename__ = "customer_projects"
    __table_args__ = (
        UniqueConstraint("customer_id", "project_id", "start_date"),
    )

    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Cloud project id as it appears on raw cost rows
    project_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    customer: Mapped["Customer"] = relationship(
        "Customer",
        back_populates="projects",
    )
