"""
Sieger Billing - Raw Cost Import Service

Bulk import of raw usage-cost rows as one ingestion batch.

An import is identified by (checksum, month, source), the checksum being the
SHA-256 of the canonical JSON form of its entries. Re-importing the same
entries returns the existing batch instead of writing the rows again.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import scoped_transaction
from app.models.audit import AuditAction
from app.models.raw_cost import RawCostEntry, RawCostIngestionBatch
from app.repositories.raw_cost_repository import RawCostRepository
from app.services.audit_service import AuditService
from app.utils.billing_month import BillingMonth
from app.utils.error_handling import ValidationException
from app.utils.money import to_decimal

logger = logging.getLogger(__name__)


ENTRY_FIELDS = (
    "billing_account_id",
    "project_id",
    "service_id",
    "sku_id",
    "usage_start_time",
    "usage_end_time",
    "usage_amount",
    "cost",
    "currency",
    "region",
)


@dataclass
class ImportResult:
    batch: RawCostIngestionBatch
    idempotent: bool = False


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _canonical_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _as_utc(value).isoformat()
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    return value


def compute_checksum(entries: Sequence[Dict[str, Any]]) -> str:
    """SHA-256 over the entries as sorted-key JSON, in the order given."""
    canonical = [
        {name: _canonical_value(entry.get(name)) for name in ENTRY_FIELDS}
        for entry in entries
    ]
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def derive_month(entries: Sequence[Dict[str, Any]]) -> Optional[str]:
    """Billing month of the first entry's usage start, in UTC."""
    if not entries:
        return None
    start = _as_utc(entries[0]["usage_start_time"])
    return f"{start.year:04d}-{start.month:02d}"


class RawCostImportService:
    """Service for importing raw cost batches."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.raw_costs = RawCostRepository(db)
        self.audit = AuditService(db)

    async def import_batch(
        self,
        source: str,
        entries: List[Dict[str, Any]],
        month: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> ImportResult:
        """
        Import entries as one batch, or return the batch already holding
        exactly these entries for the same month and source.
        """
        if month is None:
            month = derive_month(entries)
            if month is None:
                raise ValidationException(
                    "month is required when no entries are given",
                    field="month",
                )
        month = str(BillingMonth.parse(month))

        for index, entry in enumerate(entries):
            if _as_utc(entry["usage_end_time"]) < _as_utc(entry["usage_start_time"]):
                raise ValidationException(
                    f"Entry {index} ends before it starts",
                    field="entries",
                    details={"index": index},
                )

        checksum = compute_checksum(entries)
        existing = await self.raw_costs.find_batch(checksum, month, source)
        if existing is not None:
            logger.info(f"Raw cost batch {existing.id} ({source}, {month}) already imported")
            return ImportResult(batch=existing, idempotent=True)

        batch = RawCostIngestionBatch(
            source=source,
            month=month,
            row_count=len(entries),
            checksum=checksum,
            created_by=created_by,
        )
        rows = [
            RawCostEntry(
                billing_account_id=entry["billing_account_id"],
                project_id=entry["project_id"],
                service_id=entry["service_id"],
                sku_id=entry["sku_id"],
                usage_start_time=_as_utc(entry["usage_start_time"]),
                usage_end_time=_as_utc(entry["usage_end_time"]),
                usage_amount=to_decimal(entry.get("usage_amount")),
                cost=to_decimal(entry["cost"]),
                currency=entry["currency"],
                region=entry.get("region"),
            )
            for entry in entries
        ]

        try:
            async with scoped_transaction(self.db):
                await self.raw_costs.add_batch(batch, rows)
                await self.audit.log_action(
                    AuditAction.RAW_COST_IMPORT,
                    "raw_cost_ingestion_batches",
                    batch.id,
                    actor=created_by,
                    new_values={
                        "source": source,
                        "month": month,
                        "row_count": batch.row_count,
                        "checksum": checksum,
                    },
                )
        except IntegrityError:
            existing = await self.raw_costs.find_batch(checksum, month, source)
            if existing is None:
                raise
            logger.info(f"Raw cost batch {existing.id} ({source}, {month}) imported concurrently")
            return ImportResult(batch=existing, idempotent=True)

        logger.info(f"Imported raw cost batch {batch.id}: {batch.row_count} rows ({source}, {month})")
        return ImportResult(batch=batch, idempotent=False)
