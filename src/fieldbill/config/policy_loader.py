"""Utilities for loading per-account billing policy from a YAML file.

The file maps account ids to threshold overrides::

    accounts:
      42:
        approval_confidence_threshold: 0.9
        high_value_threshold: 75000
        overdue_high_days: 45
        base_rates:
          mowing: 5000

Anything not overridden falls back to the global settings.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from fieldbill.config.settings import Settings, get_settings

_FLOAT_KEYS = ("approval_confidence_threshold", "fallback_confidence")
_INT_KEYS = ("high_value_threshold", "overdue_high_days", "overdue_med_days")


@dataclass(frozen=True)
class BillingPolicy:
    """Thresholds that steer approval and overdue severity for one account."""

    approval_confidence_threshold: float
    high_value_threshold: int
    fallback_confidence: float
    overdue_high_days: int
    overdue_med_days: int
    base_rate_overrides: dict[str, int] = field(default_factory=dict)

    @staticmethod
    def from_settings(settings: Settings) -> BillingPolicy:
        return BillingPolicy(
            approval_confidence_threshold=settings.approval_confidence_threshold,
            high_value_threshold=settings.high_value_threshold,
            fallback_confidence=settings.fallback_confidence,
            overdue_high_days=settings.overdue_high_days,
            overdue_med_days=settings.overdue_med_days,
        )


def _parse_account_entry(path: Path, account_key: Any, entry: Any) -> dict[str, Any]:
    """Validate one account block from the policy file."""
    if not isinstance(entry, dict):
        raise ValueError(f"{path.name}: policy for account {account_key!r} must be a mapping")

    parsed: dict[str, Any] = {}
    for key in _FLOAT_KEYS:
        if key in entry:
            try:
                value = float(entry[key])
            except (TypeError, ValueError) as exc:
                raise ValueError(
                    f"{path.name}: invalid {key} for account {account_key!r}: {entry[key]!r}"
                ) from exc
            if not 0.0 <= value <= 1.0:
                raise ValueError(
                    f"{path.name}: {key} for account {account_key!r} must be within 0..1"
                )
            parsed[key] = value

    for key in _INT_KEYS:
        if key in entry:
            value = entry[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(
                    f"{path.name}: {key} for account {account_key!r} must be a non-negative integer"
                )
            parsed[key] = value

    base_rates = entry.get("base_rates")
    if base_rates is not None:
        if not isinstance(base_rates, dict):
            raise ValueError(f"{path.name}: base_rates for account {account_key!r} must be a mapping")
        overrides: dict[str, int] = {}
        for service_type, rate in base_rates.items():
            if isinstance(rate, bool) or not isinstance(rate, int) or rate < 0:
                raise ValueError(
                    f"{path.name}: base rate {service_type!r} for account {account_key!r} "
                    "must be a non-negative integer (minor units)"
                )
            overrides[str(service_type).strip().lower()] = rate
        parsed["base_rate_overrides"] = overrides

    return parsed


@lru_cache
def load_billing_policies(path: Path) -> dict[int, dict[str, Any]]:
    """Load per-account policy overrides keyed by account id.

    Returns:
        Mapping of account id to validated override fields. Empty when the
        file does not exist.
    """
    if not path.exists():
        return {}

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path.name}: top level must be a mapping")

    accounts = data.get("accounts") or {}
    if not isinstance(accounts, dict):
        raise ValueError(f"{path.name}: accounts must be a mapping")

    policies: dict[int, dict[str, Any]] = {}
    for account_key, entry in accounts.items():
        try:
            account_id = int(account_key)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{path.name}: invalid account id {account_key!r}") from exc
        policies[account_id] = _parse_account_entry(path, account_key, entry)
    return policies


def policy_for_account(
    account_id: int,
    settings: Settings | None = None,
    path: Path | None = None,
) -> BillingPolicy:
    """Resolve the effective billing policy for an account."""
    settings = settings or get_settings()
    policy = BillingPolicy.from_settings(settings)

    policy_path = path or settings.billing_policy_path
    if policy_path is None:
        return policy

    overrides = load_billing_policies(Path(policy_path)).get(account_id)
    if not overrides:
        return policy
    return replace(policy, **overrides)
