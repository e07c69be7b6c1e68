"""
Sieger Billing - Pricing Engine Tests

Unit tests for pricing rule selection, tiers and group summaries.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from app.models.pricing import PricingRule, PricingRuleType
from app.services.cost_entry import CostEntry
from app.services.pricing_engine import (
    UNMAPPED_GROUP_CODE,
    apply_pricing,
    order_pricing_rules,
    select_tier,
)


COMPUTE_ID = uuid4()
STORAGE_ID = uuid4()


def make_entry(cost="100", groups=((COMPUTE_ID, "COMPUTE"),), day=5, currency="USD"):
    return CostEntry(
        id=uuid4(),
        ingestion_batch_id=None,
        billing_account_id="BA-001",
        project_id="proj-a",
        service_id="compute",
        sku_id="vm-standard",
        usage_start_time=datetime(2024, 1, day, tzinfo=timezone.utc),
        usage_end_time=datetime(2024, 1, day + 1, tzinfo=timezone.utc),
        usage_amount=Decimal("1"),
        cost=Decimal(cost),
        currency=currency,
        sku_groups=tuple(groups),
    )


def make_rule(
    rule_type=PricingRuleType.LIST_DISCOUNT,
    discount_rate=None,
    tiers=None,
    sku_group_id=None,
    priority=100,
    created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    rule_id=None,
    **fields,
):
    return PricingRule(
        id=rule_id or uuid4(),
        pricing_list_id=uuid4(),
        rule_type=rule_type,
        discount_rate=Decimal(discount_rate) if discount_rate is not None else None,
        tiers=tiers,
        sku_group_id=sku_group_id,
        priority=priority,
        created_at=created_at,
        **fields,
    )


class TestRuleOrdering:
    """Test cases for deterministic rule ordering."""

    def test_lower_priority_value_first(self):
        late = make_rule(priority=20)
        early = make_rule(priority=10)

        assert order_pricing_rules([late, early]) == [early, late]

    def test_scoped_rule_before_catch_all_at_same_priority(self):
        catch_all = make_rule(priority=10)
        scoped = make_rule(priority=10, sku_group_id=COMPUTE_ID)

        assert order_pricing_rules([catch_all, scoped]) == [scoped, catch_all]

    def test_newest_rule_first_then_id(self):
        older = make_rule(created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        newer = make_rule(created_at=datetime(2024, 2, 1, tzinfo=timezone.utc))
        twin_a = make_rule(
            created_at=datetime(2023, 1, 1, tzinfo=timezone.utc),
            rule_id=UUID("00000000-0000-0000-0000-00000000000a"),
        )
        twin_b = make_rule(
            created_at=datetime(2023, 1, 1, tzinfo=timezone.utc),
            rule_id=UUID("00000000-0000-0000-0000-00000000000b"),
        )

        assert order_pricing_rules([twin_b, older, twin_a, newer]) == [newer, older, twin_a, twin_b]


class TestSelectTier:
    """Test cases for tier lookup."""

    TIERS = [
        {"from": 0, "to": 100, "rate": "1"},
        {"from": 100, "to": 1000, "rate": "0.9"},
        {"from": 1000, "rate": "0.8"},
    ]

    @pytest.mark.parametrize(
        "amount, expected_rate",
        [("0", "1"), ("99.99", "1"), ("100", "0.9"), ("5000", "0.8")],
    )
    def test_half_open_bounds(self, amount, expected_rate):
        assert select_tier(self.TIERS, Decimal(amount))["rate"] == expected_rate

    def test_no_matching_tier(self):
        assert select_tier([{"from": 10, "to": 20, "rate": "0.5"}], Decimal("5")) is None


class TestApplyPricing:
    """Test cases for apply_pricing."""

    def test_no_rules_means_list_price(self):
        result = apply_pricing([make_entry("42.5")], [])

        assert result.priced_total == Decimal("42.5")
        assert result.discount_total == Decimal("0")
        assert result.sku_group_summary["COMPUTE"].entry_count == 1

    def test_list_discount(self):
        rule = make_rule(discount_rate="0.9")

        result = apply_pricing([make_entry("100")], [rule])

        assert result.priced_total == Decimal("90.000000")
        assert result.discount_total == Decimal("10")
        assert result.sku_group_summary["COMPUTE"].discount_rate == "0.900000"
        assert result.rules_used[str(rule.id)]["entry_count"] == 1

    def test_scoped_rule_only_prices_its_group(self):
        storage_rule = make_rule(discount_rate="0.5", sku_group_id=STORAGE_ID)
        compute = make_entry("100")
        storage = make_entry("100", groups=((STORAGE_ID, "STORAGE"),))

        result = apply_pricing([compute, storage], [storage_rule])

        assert result.sku_group_summary["COMPUTE"].priced_total == Decimal("100")
        assert result.sku_group_summary["STORAGE"].priced_total == Decimal("50")

    def test_scoped_rule_beats_catch_all(self):
        catch_all = make_rule(discount_rate="0.9", priority=10)
        scoped = make_rule(discount_rate="0.7", priority=10, sku_group_id=COMPUTE_ID)

        result = apply_pricing([make_entry("100")], [catch_all, scoped])

        assert result.priced_total == Decimal("70")

    def test_rule_outside_effective_window_is_ignored(self):
        expired = make_rule(discount_rate="0.5", effective_end=date(2023, 12, 31))
        future = make_rule(discount_rate="0.6", effective_start=date(2024, 1, 20))

        result = apply_pricing([make_entry("100", day=5)], [expired, future])

        assert result.priced_total == Decimal("100")

    def test_tiered_rule_uses_row_cost_tier(self):
        rule = make_rule(
            rule_type=PricingRuleType.TIERED,
            tiers=[{"from": 0, "to": 100, "rate": "1"}, {"from": 100, "rate": "0.8"}],
        )

        result = apply_pricing([make_entry("50"), make_entry("150")], [rule])

        assert result.priced_total == Decimal("170")

    def test_tiered_rule_without_matching_tier_keeps_list_price(self):
        rule = make_rule(rule_type=PricingRuleType.TIERED, tiers=[{"from": 1000, "rate": "0.5"}])

        result = apply_pricing([make_entry("10")], [rule])

        assert result.priced_total == Decimal("10")

    def test_entries_without_group_are_unmapped(self):
        result = apply_pricing([make_entry("3", groups=())], [])

        assert list(result.sku_group_summary) == [UNMAPPED_GROUP_CODE]

    def test_summary_records_currencies(self):
        result = apply_pricing([make_entry("1", currency="USD"), make_entry("1", currency="EUR")], [])

        assert result.sku_group_summary["COMPUTE"].to_dict()["currencies"] == ["EUR", "USD"]
