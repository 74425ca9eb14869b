"""Deterministic pricing: rule set construction, fallback line, totals.

All arithmetic is done in Decimal and rounded half-up to whole minor units.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from fieldbill.config import BillingPolicy
from fieldbill.ledger import BillingProfile, Job, NewLineItem
from fieldbill.suggestions import Suggestion

# Minimum prices per service type, in cents, when the profile is silent
DEFAULT_BASE_RATES: dict[str, int] = {
    "mowing": 4500,
    "cleanup": 15000,
    "mulch": 20000,
    "general": 5000,
}


QUANTITY_STEP = Decimal("0.001")


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def quantize_quantity(quantity: Decimal) -> Decimal:
    # Matches the Numeric(12, 3) line item column
    return Decimal(quantity).quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)


def line_amount(quantity: Decimal, unit_price: int) -> int:
    return round_half_up(Decimal(quantity) * unit_price)


def normalize_service_type(service_type: str | None) -> str:
    if not service_type:
        return "general"
    return "_".join(service_type.strip().lower().replace("-", " ").split()) or "general"


@dataclass(frozen=True)
class PricingRules:
    """Snapshot of an account's pricing configuration."""

    base_rates: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_BASE_RATES))
    area_rate: Decimal | None = None
    hourly_rate: int | None = None
    minimum_charge: int | None = None
    tax_rate: Decimal = Decimal("0")

    def base_rate_for(self, service_type: str | None) -> int:
        key = normalize_service_type(service_type)
        return self.base_rates.get(key, self.base_rates.get("general", 0))

    def snapshot(self) -> dict[str, Any]:
        return {
            "base_rates": dict(self.base_rates),
            "area_rate": str(self.area_rate) if self.area_rate is not None else None,
            "hourly_rate": self.hourly_rate,
            "minimum_charge": self.minimum_charge,
            "tax_rate": str(self.tax_rate),
        }


def build_pricing_rules(
    profile: BillingProfile | None, policy: BillingPolicy | None = None
) -> PricingRules:
    """Merge defaults, the account's billing profile, and policy overrides."""
    base_rates = dict(DEFAULT_BASE_RATES)
    area_rate = hourly_rate = minimum_charge = None
    tax_rate = Decimal("0")

    if profile is not None:
        base_rates.update(
            {normalize_service_type(k): int(v) for k, v in (profile.base_rates or {}).items()}
        )
        area_rate = profile.area_rate
        hourly_rate = profile.hourly_rate
        minimum_charge = profile.minimum_charge
        # Stored as basis points: 750 -> 0.075
        if profile.tax_enabled and profile.tax_rate_bps:
            tax_rate = Decimal(profile.tax_rate_bps) / Decimal(10000)

    if policy is not None and policy.base_rate_overrides:
        base_rates.update(
            {normalize_service_type(k): v for k, v in policy.base_rate_overrides.items()}
        )

    return PricingRules(
        base_rates=base_rates,
        area_rate=area_rate,
        hourly_rate=hourly_rate,
        minimum_charge=minimum_charge,
        tax_rate=tax_rate,
    )


def fallback_line_item(rules: PricingRules, job: Job) -> NewLineItem:
    """Single line priced as the highest applicable rule.

    max(base rate, area rate x area, hourly rate x hours, minimum charge)
    """
    candidates = [rules.base_rate_for(job.service_type)]
    if rules.area_rate is not None and job.area_sqft:
        candidates.append(round_half_up(Decimal(rules.area_rate) * Decimal(job.area_sqft)))
    if rules.hourly_rate is not None and job.hours:
        candidates.append(round_half_up(Decimal(rules.hourly_rate) * Decimal(job.hours)))
    if rules.minimum_charge is not None:
        candidates.append(rules.minimum_charge)

    price = max(candidates)
    service_type = normalize_service_type(job.service_type)
    label = service_type.replace("_", " ").title()
    return NewLineItem(
        description=f"{label} service",
        quantity=Decimal("1"),
        unit_price=price,
        amount=price,
        service_type=service_type,
    )


def lines_from_suggestion(suggestion: Suggestion, service_type: str | None) -> list[NewLineItem]:
    normalized = normalize_service_type(service_type)
    lines = []
    for item in suggestion.line_items:
        quantity = quantize_quantity(item.quantity)
        lines.append(
            NewLineItem(
                description=item.description.strip(),
                quantity=quantity,
                unit_price=item.unit_price,
                amount=line_amount(quantity, item.unit_price),
                service_type=normalized,
            )
        )
    return lines


def compute_totals(lines: list[NewLineItem], tax_rate: Decimal) -> tuple[int, int, int]:
    """Returns (subtotal, tax, total) with total == subtotal + tax."""
    subtotal = sum(line.amount for line in lines)
    tax = round_half_up(Decimal(subtotal) * tax_rate)
    return subtotal, tax, subtotal + tax
