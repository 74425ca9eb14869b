"""Billing lifecycle: invoice generation, payments, disputes, overdue sweep."""

from fieldbill.billing.audit import AuditAction, AuditRecorder
from fieldbill.billing.orchestrator import (
    BillingOrchestrator,
    OverdueSweepResult,
    PricedInvoice,
    overdue_severity,
)
from fieldbill.billing.pricing import (
    DEFAULT_BASE_RATES,
    PricingRules,
    build_pricing_rules,
    compute_totals,
    fallback_line_item,
)
from fieldbill.billing.stages import BillingStage, ErrorCode, StageResult, infer_stage

__all__ = [
    "AuditAction",
    "AuditRecorder",
    "BillingOrchestrator",
    "BillingStage",
    "DEFAULT_BASE_RATES",
    "ErrorCode",
    "OverdueSweepResult",
    "PricedInvoice",
    "PricingRules",
    "StageResult",
    "build_pricing_rules",
    "compute_totals",
    "fallback_line_item",
    "infer_stage",
    "overdue_severity",
]
