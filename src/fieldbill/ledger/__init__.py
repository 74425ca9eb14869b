"""Ledger store: invoices, payments, billing issues and integrations."""

from fieldbill.ledger.db import Base, build_engine, build_session_factory, create_tables, session_scope
from fieldbill.ledger.enums import (
    IntegrationStatus,
    InvoiceStatus,
    IssueStatus,
    IssueType,
    JobStatus,
    PaymentMethod,
    PaymentStatus,
    Severity,
)
from fieldbill.ledger.errors import InvariantViolation, LedgerError, NotFoundError
from fieldbill.ledger.models import (
    AccountIntegration,
    AuditLog,
    BillingIssue,
    BillingProfile,
    Invoice,
    Job,
    LineItem,
    Payment,
)
from fieldbill.ledger.store import (
    BillingSummary,
    LedgerStore,
    NewInvoice,
    NewLineItem,
    NewPayment,
    PaymentApplication,
    PaymentSyncWrite,
)

__all__ = [
    # Database
    "Base",
    "build_engine",
    "build_session_factory",
    "create_tables",
    "session_scope",
    # Enums
    "IntegrationStatus",
    "InvoiceStatus",
    "IssueStatus",
    "IssueType",
    "JobStatus",
    "PaymentMethod",
    "PaymentStatus",
    "Severity",
    # Errors
    "InvariantViolation",
    "LedgerError",
    "NotFoundError",
    # Models
    "AccountIntegration",
    "AuditLog",
    "BillingIssue",
    "BillingProfile",
    "Invoice",
    "Job",
    "LineItem",
    "Payment",
    # Store
    "BillingSummary",
    "LedgerStore",
    "NewInvoice",
    "NewLineItem",
    "NewPayment",
    "PaymentApplication",
    "PaymentSyncWrite",
]
