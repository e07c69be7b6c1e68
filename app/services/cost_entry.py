"""
Sieger Billing - Cost Entry

In-memory working copy of a raw cost row as it moves through the billing
pipeline. The stored RawCostEntry is never modified; rules produce new
CostEntry values instead.
"""

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import FrozenSet, Iterable, List, Optional, Tuple

from app.models.raw_cost import RawCostEntry
from app.repositories.sku_group_repository import SkuGroupMemberships


@dataclass(frozen=True)
class CostEntry:
    """A cost row plus the SKU groups its SKU belongs to."""
    id: uuid.UUID
    ingestion_batch_id: Optional[uuid.UUID]
    billing_account_id: str
    project_id: str
    service_id: str
    sku_id: str
    usage_start_time: datetime
    usage_end_time: datetime
    usage_amount: Decimal
    cost: Decimal
    currency: str
    region: Optional[str] = None
    original_cost: Optional[Decimal] = None
    # Ordered by group code; pairs of (group id, group code)
    sku_groups: Tuple[Tuple[uuid.UUID, str], ...] = ()
    # Set when a MOVE_TO_CUSTOMER rule re-assigned the row
    moved_from_customer_id: Optional[uuid.UUID] = None
    moved_by_rule_id: Optional[uuid.UUID] = None

    @property
    def sku_group_ids(self) -> FrozenSet[uuid.UUID]:
        return frozenset(group_id for group_id, _ in self.sku_groups)

    @property
    def base_cost(self) -> Decimal:
        """Cost as imported, before any special rule."""
        return self.cost if self.original_cost is None else self.original_cost

    @classmethod
    def from_row(cls, row: RawCostEntry) -> "CostEntry":
        return cls(
            id=row.id,
            ingestion_batch_id=row.ingestion_batch_id,
            billing_account_id=row.billing_account_id,
            project_id=row.project_id,
            service_id=row.service_id,
            sku_id=row.sku_id,
            usage_start_time=row.usage_start_time,
            usage_end_time=row.usage_end_time,
            usage_amount=row.usage_amount,
            cost=row.cost,
            currency=row.currency,
            region=row.region,
        )

    def with_cost(self, cost: Decimal) -> "CostEntry":
        return replace(self, cost=cost, original_cost=self.base_cost)


def attach_sku_groups(
    entries: Iterable[CostEntry],
    memberships: SkuGroupMemberships,
) -> List[CostEntry]:
    """Resolve every entry's SKU-group membership from a sku_id lookup."""
    return [
        replace(entry, sku_groups=tuple(memberships.get(entry.sku_id, ())))
        for entry in entries
    ]
