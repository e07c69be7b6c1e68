"""
Sieger Billing - SKU Group Repository
"""

import uuid
from typing import Dict, Iterable, List, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.sku import SkuGroup, SkuGroupMapping


# sku_id -> [(group_id, group_code), ...] ordered by group code
SkuGroupMemberships = Dict[str, List[Tuple[uuid.UUID, str]]]


class SkuGroupRepository:
    """Data access for SKU groups."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def memberships_for(self, sku_ids: Iterable[str]) -> SkuGroupMemberships:
        sku_ids = sorted(set(sku_ids))
        if not sku_ids:
            return {}

        result = await self.db.execute(
            select(SkuGroupMapping.sku_id, SkuGroup.id, SkuGroup.code)
            .join(SkuGroup, SkuGroup.id == SkuGroupMapping.sku_group_id)
            .where(SkuGroupMapping.sku_id.in_(sku_ids))
            .order_by(SkuGroupMapping.sku_id, SkuGroup.code)
        )
        memberships: SkuGroupMemberships = {}
        for sku_id, group_id, code in result.all():
            memberships.setdefault(sku_id, []).append((group_id, code))
        return memberships

    async def codes_by_id(self, group_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, str]:
        group_ids = [gid for gid in set(group_ids) if gid is not None]
        if not group_ids:
            return {}
        result = await self.db.execute(
            select(SkuGroup.id, SkuGroup.code).where(SkuGroup.id.in_(group_ids))
        )
        return {group_id: code for group_id, code in result.all()}
