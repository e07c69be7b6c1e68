"""
Sieger Billing - Pricing Engine

Turns rule-transformed cost rows into priced amounts using the customer's
ACTIVE pricing list.

Supported rule types:
- LIST_DISCOUNT: priced = cost * discount_rate
- TIERED: the tier whose [from, to) contains the row cost supplies the rate

Rule selection for a row: rules whose effective window covers the row's
usage date and whose SKU-group scope is empty or one of the row's groups,
ordered by priority, then scoped before catch-all, then most recently
created, then id. The first one wins. No rule means list price.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from app.models.pricing import PricingList, PricingRule, PricingRuleType
from app.repositories.pricing_repository import PricingRepository
from app.services.cost_entry import CostEntry
from app.utils.billing_month import window_covers
from app.utils.money import ZERO, quantize_unit, to_decimal, unit_str

logger = logging.getLogger(__name__)


UNMAPPED_GROUP_CODE = "UNMAPPED"


@dataclass(frozen=True)
class PricedEntry:
    """One cost row after pricing."""
    entry: CostEntry
    raw_cost: Decimal
    priced_cost: Decimal
    group_code: str
    rule_id: Optional[uuid.UUID] = None
    rule_type: Optional[PricingRuleType] = None
    rate: Optional[Decimal] = None


@dataclass
class SkuGroupPricingSummary:
    """Raw and priced totals for one SKU group."""
    sku_group_code: str
    raw_total: Decimal = ZERO
    priced_total: Decimal = ZERO
    entry_count: int = 0
    rule_ids: List[str] = field(default_factory=list)
    rates: List[str] = field(default_factory=list)
    currencies: List[str] = field(default_factory=list)

    def add(self, priced: PricedEntry) -> None:
        self.raw_total += priced.raw_cost
        self.priced_total += priced.priced_cost
        self.entry_count += 1
        if priced.rule_id is not None and str(priced.rule_id) not in self.rule_ids:
            self.rule_ids.append(str(priced.rule_id))
        if priced.rate is not None and unit_str(priced.rate) not in self.rates:
            self.rates.append(unit_str(priced.rate))
        if priced.entry.currency not in self.currencies:
            self.currencies.append(priced.entry.currency)

    @property
    def discount_rate(self) -> Optional[str]:
        return self.rates[0] if len(self.rates) == 1 else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sku_group_code": self.sku_group_code,
            "raw_total": unit_str(self.raw_total),
            "priced_total": unit_str(self.priced_total),
            "entry_count": self.entry_count,
            "rule_ids": sorted(self.rule_ids),
            "discount_rate": self.discount_rate,
            "currencies": sorted(self.currencies),
        }


@dataclass
class PricingResult:
    """Pricing outcome for one customer."""
    pricing_list_id: Optional[uuid.UUID] = None
    priced_entries: List[PricedEntry] = field(default_factory=list)
    raw_total: Decimal = ZERO
    priced_total: Decimal = ZERO
    sku_group_summary: Dict[str, SkuGroupPricingSummary] = field(default_factory=dict)
    rules_used: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def discount_total(self) -> Decimal:
        return self.raw_total - self.priced_total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pricing_list_id": str(self.pricing_list_id) if self.pricing_list_id else None,
            "raw_total": unit_str(self.raw_total),
            "priced_total": unit_str(self.priced_total),
            "discount": unit_str(self.discount_total),
            "sku_group_breakdown": {
                code: summary.to_dict() for code, summary in sorted(self.sku_group_summary.items())
            },
            "rules_used": [self.rules_used[key] for key in sorted(self.rules_used)],
        }


# ===========================================
# RULE SELECTION
# ===========================================

def _created_key(rule: PricingRule) -> datetime:
    if rule.created_at is None:
        return datetime.min
    return rule.created_at.replace(tzinfo=None)


def order_pricing_rules(rules: Iterable[PricingRule]) -> List[PricingRule]:
    """Deterministic evaluation order for a list's rules."""
    ordered = sorted(rules, key=lambda rule: str(rule.id))
    ordered.sort(key=_created_key, reverse=True)
    ordered.sort(key=lambda rule: (rule.priority, rule.sku_group_id is None))
    return ordered


def select_pricing_rule(entry: CostEntry, ordered_rules: Sequence[PricingRule]) -> Optional[PricingRule]:
    usage_date = entry.usage_start_time.date()
    group_ids = entry.sku_group_ids
    for rule in ordered_rules:
        if not window_covers(rule.effective_start, rule.effective_end, usage_date):
            continue
        if rule.sku_group_id is not None and rule.sku_group_id not in group_ids:
            continue
        return rule
    return None


def select_tier(tiers: Optional[List[Dict[str, Any]]], amount: Decimal) -> Optional[Dict[str, Any]]:
    """The tier with from <= amount < to; a missing `to` is unbounded."""
    for tier in tiers or []:
        lower = to_decimal(tier.get("from", 0))
        upper = tier.get("to")
        if amount >= lower and (upper is None or amount < to_decimal(upper)):
            return tier
    return None


def _rate_for(rule: PricingRule, cost: Decimal) -> Optional[Decimal]:
    if rule.rule_type == PricingRuleType.LIST_DISCOUNT:
        return rule.discount_rate
    if rule.rule_type == PricingRuleType.TIERED:
        tier = select_tier(rule.tiers, cost)
        if tier is not None and tier.get("rate") is not None:
            return to_decimal(tier["rate"])
    return None


def _group_code(entry: CostEntry, rule: Optional[PricingRule]) -> str:
    if rule is not None and rule.sku_group_id is not None:
        for group_id, code in entry.sku_groups:
            if group_id == rule.sku_group_id:
                return code
    if entry.sku_groups:
        return entry.sku_groups[0][1]
    return UNMAPPED_GROUP_CODE


def price_entry(entry: CostEntry, ordered_rules: Sequence[PricingRule]) -> PricedEntry:
    rule = select_pricing_rule(entry, ordered_rules)
    if rule is None:
        return PricedEntry(
            entry=entry,
            raw_cost=entry.cost,
            priced_cost=entry.cost,
            group_code=_group_code(entry, None),
        )

    rate = _rate_for(rule, entry.cost)
    priced_cost = quantize_unit(entry.cost * rate) if rate is not None else entry.cost
    return PricedEntry(
        entry=entry,
        raw_cost=entry.cost,
        priced_cost=priced_cost,
        group_code=_group_code(entry, rule),
        rule_id=rule.id,
        rule_type=rule.rule_type,
        rate=rate,
    )


def apply_pricing(
    entries: Iterable[CostEntry],
    rules: Iterable[PricingRule],
    pricing_list_id: Optional[uuid.UUID] = None,
) -> PricingResult:
    """Price every entry and build per-group totals. Pure and synchronous."""
    ordered_rules = order_pricing_rules(rules)
    result = PricingResult(pricing_list_id=pricing_list_id)

    for entry in entries:
        priced = price_entry(entry, ordered_rules)
        result.priced_entries.append(priced)
        result.raw_total += priced.raw_cost
        result.priced_total += priced.priced_cost

        summary = result.sku_group_summary.get(priced.group_code)
        if summary is None:
            summary = SkuGroupPricingSummary(sku_group_code=priced.group_code)
            result.sku_group_summary[priced.group_code] = summary
        summary.add(priced)

        if priced.rule_id is not None:
            key = str(priced.rule_id)
            used = result.rules_used.setdefault(key, {
                "rule_id": key,
                "rule_type": priced.rule_type.value,
                "sku_group_code": priced.group_code,
                "entry_count": 0,
            })
            used["entry_count"] += 1

    return result


def capture_pricing_snapshot(
    pricing_list: Optional[PricingList],
    rules: Iterable[PricingRule],
) -> Dict[str, Any]:
    """The pricing list and its rules as they were at run time."""
    return {
        "pricing_list_id": str(pricing_list.id) if pricing_list else None,
        "pricing_list_name": pricing_list.name if pricing_list else None,
        "rules": [
            {
                "rule_id": str(rule.id),
                "rule_type": rule.rule_type.value,
                "discount_rate": str(rule.discount_rate) if rule.discount_rate is not None else None,
                "tiers": rule.tiers,
                "sku_group_id": str(rule.sku_group_id) if rule.sku_group_id else None,
                "effective_start": rule.effective_start.isoformat() if rule.effective_start else None,
                "effective_end": rule.effective_end.isoformat() if rule.effective_end else None,
                "priority": rule.priority,
            }
            for rule in order_pricing_rules(rules)
        ],
    }


class PricingEngine:
    """Loads a customer's pricing rules and prices cost rows with them."""

    def __init__(self, pricing: PricingRepository):
        self.pricing = pricing

    async def load_pricing_rules(
        self,
        customer_id: uuid.UUID,
    ) -> Tuple[Optional[PricingList], List[PricingRule]]:
        pricing_list = await self.pricing.get_active_list(customer_id)
        if pricing_list is None:
            logger.debug(f"No active pricing list for customer {customer_id}; list prices apply")
            return None, []
        return pricing_list, list(pricing_list.rules)

    def apply_pricing(
        self,
        entries: Iterable[CostEntry],
        rules: Iterable[PricingRule],
        pricing_list_id: Optional[uuid.UUID] = None,
    ) -> PricingResult:
        return apply_pricing(entries, rules, pricing_list_id=pricing_list_id)
