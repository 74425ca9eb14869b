"""Configuration module for fieldbill."""

from fieldbill.config.logging import configure_logging
from fieldbill.config.policy_loader import BillingPolicy, policy_for_account
from fieldbill.config.settings import Settings, get_settings

__all__ = [
    "BillingPolicy",
    "Settings",
    "configure_logging",
    "get_settings",
    "policy_for_account",
]
