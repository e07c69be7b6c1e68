"""
Sieger Billing - Special Rules Engine

Applies special rules to a customer's cost rows before pricing.

Rule Types:
- EXCLUDE_SKU / EXCLUDE_SKU_GROUP: drop the row from billing
- OVERRIDE_COST: cost = cost * cost_multiplier (0 = free)
- MOVE_TO_CUSTOMER: drop the row here and bill it to target_customer_id

Rules are tried in priority order and the first matching rule wins; a row
is never touched by more than one rule.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from app.models.special_rule import SpecialRule, SpecialRuleEffectLedger, SpecialRuleType
from app.repositories.sku_group_repository import SkuGroupRepository
from app.repositories.special_rule_repository import SpecialRuleRepository
from app.services.cost_entry import CostEntry, attach_sku_groups
from app.utils.billing_month import BillingMonth
from app.utils.money import ZERO, quantize_unit, unit_str

logger = logging.getLogger(__name__)


EXCLUDING_RULE_TYPES = (SpecialRuleType.EXCLUDE_SKU, SpecialRuleType.EXCLUDE_SKU_GROUP)


# ===========================================
# MATCHING
# ===========================================

@dataclass(frozen=True)
class MatchCriteria:
    """
    A rule's match predicates. None is a wildcard; every other field must
    equal the entry's value for the rule to match.
    """
    sku_id: Optional[str] = None
    sku_group_id: Optional[uuid.UUID] = None
    service_id: Optional[str] = None
    project_id: Optional[str] = None
    billing_account_id: Optional[str] = None

    @classmethod
    def from_rule(cls, rule: SpecialRule) -> "MatchCriteria":
        return cls(
            sku_id=rule.match_sku_id,
            sku_group_id=rule.match_sku_group_id,
            service_id=rule.match_service_id,
            project_id=rule.match_project_id,
            billing_account_id=rule.match_billing_account_id,
        )

    def matches(self, entry: CostEntry) -> bool:
        return all((
            self.sku_id is None or self.sku_id == entry.sku_id,
            self.sku_group_id is None or self.sku_group_id in entry.sku_group_ids,
            self.service_id is None or self.service_id == entry.service_id,
            self.project_id is None or self.project_id == entry.project_id,
            self.billing_account_id is None or self.billing_account_id == entry.billing_account_id,
        ))

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "sku_id": self.sku_id,
            "sku_group_id": str(self.sku_group_id) if self.sku_group_id else None,
            "service_id": self.service_id,
            "project_id": self.project_id,
            "billing_account_id": self.billing_account_id,
        }


# ===========================================
# RESULTS
# ===========================================

@dataclass
class RuleApplicationResult:
    """What one rule did to one customer's rows."""
    rule_id: uuid.UUID
    rule_name: str
    rule_type: SpecialRuleType
    priority: int
    affected_row_count: int = 0
    cost_delta: Decimal = ZERO
    by_project: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    by_sku: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def record(self, entry: CostEntry, delta: Decimal) -> None:
        self.affected_row_count += 1
        self.cost_delta += delta
        for bucket, key in ((self.by_project, entry.project_id), (self.by_sku, entry.sku_id)):
            tally = bucket.setdefault(key, {"count": 0, "delta": ZERO})
            tally["count"] += 1
            tally["delta"] += delta

    def summary(self) -> Dict[str, Any]:
        """JSON-safe breakdown for the effect ledger."""
        def _dump(bucket: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
            return {
                key: {"count": tally["count"], "delta": unit_str(tally["delta"])}
                for key, tally in sorted(bucket.items())
            }

        return {"by_project": _dump(self.by_project), "by_sku": _dump(self.by_sku)}


@dataclass
class SpecialRulesResult:
    """Outcome of running one customer's rows through the special rules."""
    transformed_entries: List[CostEntry] = field(default_factory=list)
    excluded_entries: List[CostEntry] = field(default_factory=list)
    # target customer id -> rows to bill there
    moved_entries: Dict[uuid.UUID, List[CostEntry]] = field(default_factory=dict)
    rule_results: List[RuleApplicationResult] = field(default_factory=list)
    total_cost_delta: Decimal = ZERO

    @property
    def rules_applied(self) -> List[Dict[str, Any]]:
        return [
            {
                "rule_id": str(result.rule_id),
                "rule_name": result.rule_name,
                "rule_type": result.rule_type.value,
                "priority": result.priority,
            }
            for result in self.rule_results
        ]

    @property
    def moved_row_count(self) -> int:
        return sum(len(rows) for rows in self.moved_entries.values())


# ===========================================
# APPLICATION
# ===========================================

def _is_applicable(rule: SpecialRule, customer_id: Optional[uuid.UUID]) -> bool:
    """A rule missing its type parameter never applies; the scan moves on."""
    if rule.rule_type == SpecialRuleType.OVERRIDE_COST:
        return rule.cost_multiplier is not None
    if rule.rule_type == SpecialRuleType.MOVE_TO_CUSTOMER:
        return rule.target_customer_id is not None and rule.target_customer_id != customer_id
    return True


def apply_special_rules(
    entries: Iterable[CostEntry],
    rules: Sequence[SpecialRule],
    customer_id: Optional[uuid.UUID] = None,
) -> SpecialRulesResult:
    """
    Run entries through rules (already in priority order).

    Pure and synchronous. `customer_id` is the customer whose rows these
    are; a MOVE_TO_CUSTOMER rule pointing back at it does not apply.
    """
    compiled = [(rule, MatchCriteria.from_rule(rule)) for rule in rules]
    results: Dict[uuid.UUID, RuleApplicationResult] = {}
    outcome = SpecialRulesResult()

    for entry in entries:
        for rule, criteria in compiled:
            if not criteria.matches(entry) or not _is_applicable(rule, customer_id):
                continue

            if rule.rule_type in EXCLUDING_RULE_TYPES:
                delta = -entry.cost
                outcome.excluded_entries.append(entry)
            elif rule.rule_type == SpecialRuleType.OVERRIDE_COST:
                new_cost = entry.cost * rule.cost_multiplier
                delta = new_cost - entry.cost
                outcome.transformed_entries.append(entry.with_cost(new_cost))
            else:
                delta = -entry.cost
                outcome.moved_entries.setdefault(rule.target_customer_id, []).append(
                    replace(entry, moved_from_customer_id=customer_id, moved_by_rule_id=rule.id)
                )

            result = results.get(rule.id)
            if result is None:
                result = RuleApplicationResult(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    rule_type=rule.rule_type,
                    priority=rule.priority,
                )
                results[rule.id] = result
            result.record(entry, delta)
            outcome.total_cost_delta += delta
            break
        else:
            outcome.transformed_entries.append(entry)

    # Report in evaluation order
    outcome.rule_results = [results[rule.id] for rule, _ in compiled if rule.id in results]
    return outcome


def capture_special_rules_snapshot(rules: Iterable[SpecialRule]) -> List[Dict[str, Any]]:
    """Rules as they were at run time, for invoice reproducibility."""
    return [
        {
            "rule_id": str(rule.id),
            "customer_id": str(rule.customer_id) if rule.customer_id else None,
            "name": rule.name,
            "rule_type": rule.rule_type.value,
            "priority": rule.priority,
            "match_criteria": MatchCriteria.from_rule(rule).to_dict(),
            "parameters": {
                "cost_multiplier": str(rule.cost_multiplier) if rule.cost_multiplier is not None else None,
                "target_customer_id": str(rule.target_customer_id) if rule.target_customer_id else None,
            },
            "effective_start": rule.effective_start.isoformat() if rule.effective_start else None,
            "effective_end": rule.effective_end.isoformat() if rule.effective_end else None,
        }
        for rule in rules
    ]


class SpecialRulesEngine:
    """Loads special rules, applies them and records their effects."""

    def __init__(self, rules: SpecialRuleRepository, sku_groups: SkuGroupRepository):
        self.rules = rules
        self.sku_groups = sku_groups

    async def load_applicable_special_rules(
        self,
        customer_id: uuid.UUID,
        billing_month: BillingMonth,
    ) -> List[SpecialRule]:
        rules = await self.rules.list_applicable(customer_id, billing_month)
        logger.debug(f"Loaded {len(rules)} special rules for customer {customer_id} ({billing_month})")
        return rules

    async def attach_sku_groups(self, entries: Sequence[CostEntry]) -> List[CostEntry]:
        memberships = await self.sku_groups.memberships_for(entry.sku_id for entry in entries)
        return attach_sku_groups(entries, memberships)

    def apply_special_rules(
        self,
        entries: Iterable[CostEntry],
        rules: Sequence[SpecialRule],
        customer_id: Optional[uuid.UUID] = None,
    ) -> SpecialRulesResult:
        return apply_special_rules(entries, rules, customer_id=customer_id)

    async def record_special_rule_effects(
        self,
        invoice_run_id: uuid.UUID,
        customer_id: uuid.UUID,
        result: SpecialRulesResult,
    ) -> List[SpecialRuleEffectLedger]:
        """Append one ledger row per rule that touched the customer's rows."""
        effects = [
            SpecialRuleEffectLedger(
                invoice_run_id=invoice_run_id,
                rule_id=rule_result.rule_id,
                customer_id=customer_id,
                affected_row_count=rule_result.affected_row_count,
                cost_delta=quantize_unit(rule_result.cost_delta),
                summary=rule_result.summary(),
            )
            for rule_result in result.rule_results
        ]
        if effects:
            await self.rules.add_effects(effects)
        return effects
