"""Billing lifecycle stages and stage inference.

The stage of an invoice is never stored; it is derived from the invoice's
status, its sync state, and the amount paid so far. Re-running a handler
against the same data therefore always reports the same stage.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from fieldbill.ledger import Invoice, InvoiceStatus


class BillingStage(str, Enum):
    JOB_COMPLETED = "JOB_COMPLETED"
    INVOICE_DRAFT = "INVOICE_DRAFT"
    INVOICE_PENDING_APPROVAL = "INVOICE_PENDING_APPROVAL"
    INVOICE_SENT = "INVOICE_SENT"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    ACCOUNTING_SYNCED = "ACCOUNTING_SYNCED"
    CLOSED = "CLOSED"
    # Exception paths
    OVERDUE = "OVERDUE"
    DISPUTE = "DISPUTE"
    REMEDIATION = "REMEDIATION"


class ErrorCode(str, Enum):
    INVALID_STATE = "INVALID_STATE"
    NOT_FOUND = "NOT_FOUND"


@dataclass
class StageResult:
    """Outcome of one orchestrator step."""

    success: bool
    next_stage: BillingStage | None = None
    requires_approval: bool = False
    error_code: ErrorCode | None = None
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, code: ErrorCode, message: str) -> "StageResult":
        return cls(success=False, error_code=code, error=message)


def infer_stage(invoice: Invoice, paid_total: int) -> BillingStage:
    """Derive where an invoice sits in the lifecycle."""
    status = invoice.status
    if status is InvoiceStatus.DISPUTED:
        return BillingStage.DISPUTE
    if status is InvoiceStatus.OVERDUE:
        return BillingStage.OVERDUE
    if status is InvoiceStatus.DRAFT:
        return BillingStage.INVOICE_DRAFT
    if status is InvoiceStatus.PENDING_APPROVAL:
        return BillingStage.INVOICE_PENDING_APPROVAL
    if status is InvoiceStatus.PAID:
        if invoice.external_id is None:
            return BillingStage.PAYMENT_RECEIVED
        # Synced once and fully paid: nothing left to do
        return BillingStage.CLOSED
    if status is InvoiceStatus.PARTIAL or paid_total > 0:
        return BillingStage.PAYMENT_PENDING
    return BillingStage.INVOICE_SENT
