"""Internal reconciliation: stored invoice status against recorded payments."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from fieldbill.billing.audit import AuditAction, AuditRecorder
from fieldbill.ledger import Invoice, InvoiceStatus, IssueType, LedgerStore, Severity
from fieldbill.ledger.db import utcnow

logger = structlog.get_logger(__name__)

RELEVANT_STATUSES = (
    InvoiceStatus.SENT,
    InvoiceStatus.PARTIAL,
    InvoiceStatus.OVERDUE,
    InvoiceStatus.PAID,
)


@dataclass
class Finding:
    """One mismatch between an invoice's status and its payments."""

    invoice_id: int
    severity: Severity
    summary: str
    total: int
    paid: int

    @property
    def owed(self) -> int:
        return self.total - self.paid

    def to_dict(self) -> dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "severity": self.severity.value,
            "summary": self.summary,
            "total": self.total,
            "paid": self.paid,
            "owed": self.owed,
        }


@dataclass
class ReconciliationReport:
    account_id: int
    invoices_checked: int = 0
    findings: list[Finding] = field(default_factory=list)
    issues_created: list[int] = field(default_factory=list)

    def count(self, severity: Severity) -> int:
        return sum(1 for f in self.findings if f.severity is severity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "invoices_checked": self.invoices_checked,
            "findings": [f.to_dict() for f in self.findings],
            "issues_created": list(self.issues_created),
            "by_severity": {s.value: self.count(s) for s in Severity},
        }


def check_invoice(invoice: Invoice, paid: int, now: datetime) -> list[Finding]:
    """Compare one invoice's status against its completed payment total."""
    owed = invoice.total - paid
    number = invoice.display_number
    findings: list[Finding] = []

    def add(severity: Severity, summary: str) -> None:
        findings.append(Finding(invoice.id, severity, summary, invoice.total, paid))

    if invoice.status is InvoiceStatus.PAID:
        if owed > 0:
            add(Severity.HIGH, f"Invoice #{number} is marked PAID but {owed} is still owed")
        return findings

    if owed <= 0:
        add(
            Severity.MED,
            f"Invoice #{number} is fully paid but status is {invoice.status.value}",
        )
    if invoice.status is InvoiceStatus.SENT:
        if paid > 0:
            add(Severity.LOW, f"Invoice #{number} has a partial payment of {paid} but status is SENT")
        if invoice.due_date is not None and invoice.due_date < now.date():
            add(Severity.MED, f"Invoice #{number} is past due but status is SENT")
    return findings


class InternalReconciler:
    """Finds invoices whose stored status disagrees with their payments.

    Only HIGH findings become billing issues; the rest are reported. Summaries
    are stable for unchanged data, so a repeated run finds the open issue and
    creates nothing new.
    """

    def __init__(self, store: LedgerStore):
        self._store = store
        self._audit = AuditRecorder(store)

    def reconcile_account(
        self, account_id: int, now: datetime | None = None
    ) -> ReconciliationReport:
        now = now or utcnow()
        log = logger.bind(account_id=account_id)

        invoices = self._store.list_invoices(account_id, statuses=RELEVANT_STATUSES)
        paid_by_invoice = self._store.completed_totals_by_invoice(account_id)

        report = ReconciliationReport(account_id=account_id, invoices_checked=len(invoices))
        for invoice in invoices:
            report.findings.extend(
                check_invoice(invoice, paid_by_invoice.get(invoice.id, 0), now)
            )

        for finding in report.findings:
            if finding.severity is not Severity.HIGH:
                continue
            issue, created = self._store.create_issue_if_absent(
                account_id,
                IssueType.VARIANCE,
                Severity.HIGH,
                finding.summary,
                invoice_id=finding.invoice_id,
                details={"total": finding.total, "paid": finding.paid, "owed": finding.owed},
            )
            if created:
                report.issues_created.append(issue.id)
                self._audit.record(
                    account_id,
                    AuditAction.VARIANCE_DETECTED,
                    "invoice",
                    finding.invoice_id,
                    {"billing_issue_id": issue.id, "owed": finding.owed},
                )

        log.info(
            "reconciliation_completed",
            invoices_checked=report.invoices_checked,
            findings=len(report.findings),
            issues_created=len(report.issues_created),
        )
        return report
