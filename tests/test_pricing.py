"""Tests for deterministic pricing."""

from decimal import Decimal

from fieldbill.billing.pricing import (
    DEFAULT_BASE_RATES,
    PricingRules,
    build_pricing_rules,
    compute_totals,
    fallback_line_item,
    line_amount,
    lines_from_suggestion,
    normalize_service_type,
    round_half_up,
)
from fieldbill.config import BillingPolicy, get_settings, policy_for_account
from fieldbill.ledger import BillingProfile, Job, JobStatus, NewLineItem

from conftest import make_suggestion


def make_job(**fields) -> Job:
    fields.setdefault("service_type", "mowing")
    return Job(id=1, account_id=1, status=JobStatus.COMPLETED, **fields)


def make_policy(**overrides) -> BillingPolicy:
    values = dict(
        approval_confidence_threshold=0.8,
        high_value_threshold=50000,
        fallback_confidence=0.7,
        overdue_high_days=30,
        overdue_med_days=14,
    )
    values.update(overrides)
    return BillingPolicy(**values)


class TestRounding:
    def test_half_up(self):
        assert round_half_up(Decimal("2.5")) == 3
        assert round_half_up(Decimal("1111.12")) == 1111

    def test_line_amount_fractional_quantity(self):
        assert line_amount(Decimal("1.5"), 4501) == 6752

    def test_normalize_service_type(self):
        assert normalize_service_type(" Leaf-Cleanup ") == "leaf_cleanup"
        assert normalize_service_type(None) == "general"


class TestBuildPricingRules:
    """Tests for merging defaults, profile, and policy."""

    def test_defaults_without_profile(self):
        rules = build_pricing_rules(None)

        assert rules.base_rates == DEFAULT_BASE_RATES
        assert rules.tax_rate == Decimal("0")

    def test_profile_overrides_and_tax_basis_points(self):
        profile = BillingProfile(
            account_id=1,
            base_rates={"Mowing": 5500},
            tax_enabled=True,
            tax_rate_bps=800,
            minimum_charge=3000,
        )

        rules = build_pricing_rules(profile)

        assert rules.base_rates["mowing"] == 5500
        assert rules.base_rates["cleanup"] == 15000
        assert rules.tax_rate == Decimal("0.08")
        assert rules.minimum_charge == 3000

    def test_tax_disabled_ignores_rate(self):
        profile = BillingProfile(account_id=1, tax_enabled=False, tax_rate_bps=800)

        assert build_pricing_rules(profile).tax_rate == Decimal("0")

    def test_policy_base_rate_overrides_win(self):
        profile = BillingProfile(account_id=1, base_rates={"mowing": 5500})
        policy = make_policy(base_rate_overrides={"mowing": 6100})

        rules = build_pricing_rules(profile, policy)

        assert rules.base_rate_for("Mowing") == 6100

    def test_multi_word_policy_override_matches_service_type(self):
        policy = make_policy(base_rate_overrides={"spring cleanup": 30000, "Leaf-Removal": 9000})

        rules = build_pricing_rules(None, policy)

        assert rules.base_rate_for("Spring Cleanup") == 30000
        assert rules.base_rate_for("leaf removal") == 9000

    def test_policy_file_override_prices_fallback_line(self, tmp_path):
        """Test that a YAML override keyed by a display name reaches the fallback line."""
        path = tmp_path / "policy.yaml"
        path.write_text("accounts:\n  1:\n    base_rates:\n      Spring Cleanup: 30000\n")
        policy = policy_for_account(1, settings=get_settings(), path=path)

        line = fallback_line_item(
            build_pricing_rules(None, policy), make_job(service_type="spring-cleanup")
        )

        assert line.unit_price == 30000
        assert line.service_type == "spring_cleanup"

    def test_unknown_service_uses_general(self):
        assert PricingRules().base_rate_for("snow removal") == 5000


class TestFallbackLineItem:
    """Tests for max-of-rules fallback pricing."""

    def test_base_rate_only(self):
        line = fallback_line_item(PricingRules(), make_job())

        assert line.amount == 4500
        assert line.quantity == Decimal("1")
        assert line.description == "Mowing service"

    def test_area_rate_wins(self):
        rules = PricingRules(area_rate=Decimal("1.25"))
        line = fallback_line_item(rules, make_job(area_sqft=Decimal("8000")))

        assert line.amount == 10000

    def test_hourly_rate_wins(self):
        rules = PricingRules(hourly_rate=6000)
        line = fallback_line_item(rules, make_job(service_type="cleanup", hours=Decimal("3.5")))

        assert line.amount == 21000
        assert line.service_type == "cleanup"

    def test_minimum_charge_floor(self):
        rules = PricingRules(minimum_charge=7500)

        assert fallback_line_item(rules, make_job()).amount == 7500


class TestTotals:
    def test_totals_with_tax(self):
        lines = [
            NewLineItem(
                description="Lawn mowing",
                quantity=Decimal("1"),
                unit_price=13889,
                amount=13889,
            )
        ]

        assert compute_totals(lines, Decimal("0.08")) == (13889, 1111, 15000)

    def test_lines_from_suggestion(self):
        suggestion = make_suggestion(("Mowing", "2", 3000), ("Edging", "1", 1250))

        lines = lines_from_suggestion(suggestion, "Mowing")

        assert [line.amount for line in lines] == [6000, 1250]
        assert all(line.service_type == "mowing" for line in lines)

    def test_suggested_quantity_quantized_before_amount(self):
        """Test that the amount is computed from the quantity as it will be stored."""
        suggestion = make_suggestion(("Edging", "1.2345", 1000), ("Trim", "0.3333", 2999))

        lines = lines_from_suggestion(suggestion, "mowing")

        assert [line.quantity for line in lines] == [Decimal("1.235"), Decimal("0.333")]
        assert [line.amount for line in lines] == [1235, 999]
        assert all(line.amount == line_amount(line.quantity, line.unit_price) for line in lines)
