"""Account-scoped ledger store with create-or-get semantics.

Every public method runs in its own transaction. Creating operations look
for the record under its natural key first and fall back to re-reading it
when a concurrent writer wins the unique constraint, so retries never
produce duplicates.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from fieldbill.ledger.db import build_engine, build_session_factory, create_tables, session_scope, utcnow
from fieldbill.ledger.enums import (
    IntegrationStatus,
    InvoiceStatus,
    IssueStatus,
    IssueType,
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

logger = structlog.get_logger(__name__)

_UNSET: Any = object()

PENDING_STATUSES = (InvoiceStatus.SENT, InvoiceStatus.PARTIAL, InvoiceStatus.OVERDUE)


# =============================================================================
# WRITE MODELS
# =============================================================================


@dataclass
class NewLineItem:
    description: str
    quantity: Decimal
    unit_price: int
    amount: int
    service_type: str | None = None


@dataclass
class NewInvoice:
    """Everything needed to persist an invoice and its lines as one unit."""

    subtotal: int
    tax: int
    total: int
    status: InvoiceStatus
    due_date: date | None
    line_items: list[NewLineItem]
    customer_id: int | None = None
    customer_name: str | None = None

    def validate(self) -> None:
        if self.total != self.subtotal + self.tax:
            raise InvariantViolation(
                f"total {self.total} != subtotal {self.subtotal} + tax {self.tax}"
            )
        if self.total < 0:
            raise InvariantViolation(f"total {self.total} is negative")
        line_sum = sum(line.amount for line in self.line_items)
        if line_sum != self.subtotal:
            raise InvariantViolation(
                f"line items sum to {line_sum}, subtotal is {self.subtotal}"
            )


@dataclass
class NewPayment:
    """A payment staged in memory before the sync persistence step."""

    external_id: str
    amount: int
    occurred_at: datetime
    invoice_id: int | None = None
    method: PaymentMethod = PaymentMethod.UNKNOWN
    status: PaymentStatus = PaymentStatus.SUCCEEDED


@dataclass
class PaymentApplication:
    payment: Payment
    invoice: Invoice
    total_paid: int

    @property
    def remaining(self) -> int:
        return self.invoice.total - self.total_paid


@dataclass
class PaymentSyncWrite:
    payment_ids: list[int] = field(default_factory=list)
    invoices_updated: list[int] = field(default_factory=list)
    overpayment_issue_ids: list[int] = field(default_factory=list)


@dataclass
class BillingSummary:
    pending_invoices: int
    overdue_invoices: int
    active_disputes: int
    total_outstanding: int
    recent_payments: int

    def to_dict(self) -> dict[str, int]:
        return {
            "pending_invoices": self.pending_invoices,
            "overdue_invoices": self.overdue_invoices,
            "active_disputes": self.active_disputes,
            "total_outstanding": self.total_outstanding,
            "recent_payments": self.recent_payments,
        }


def settle(invoice: Invoice, total_paid: int, paid_at: datetime) -> InvoiceStatus:
    """Set PAID/PARTIAL from the paid total; paid_at only survives on PAID."""
    if invoice.total - total_paid <= 0:
        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = paid_at
    else:
        invoice.status = InvoiceStatus.PARTIAL
        invoice.paid_at = None
    return invoice.status


def overpayment_summary(invoice: Invoice, excess: int, trigger: str) -> str:
    return f"Overpayment of {excess} on invoice {invoice.display_number} ({trigger})"


# =============================================================================
# STORE
# =============================================================================


class LedgerStore:
    """Persistent record of invoices, payments and billing issues."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._factory = session_factory

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False, create: bool = False) -> "LedgerStore":
        engine = build_engine(database_url, echo=echo)
        if create:
            create_tables(engine)
        return cls(build_session_factory(engine))

    def _scope(self):
        return session_scope(self._factory)

    # === Jobs & Profiles ===

    def get_job(self, account_id: int, job_id: int) -> Job | None:
        with self._scope() as session:
            return session.scalar(
                select(Job).where(Job.id == job_id, Job.account_id == account_id)
            )

    def get_billing_profile(self, account_id: int) -> BillingProfile | None:
        with self._scope() as session:
            return session.get(BillingProfile, account_id)

    # === Invoices ===

    @staticmethod
    def _invoice_query(account_id: int, with_lines: bool):
        query = select(Invoice).where(Invoice.account_id == account_id)
        if with_lines:
            query = query.options(selectinload(Invoice.line_items))
        return query

    def get_invoice(self, account_id: int, invoice_id: int, with_lines: bool = False) -> Invoice:
        with self._scope() as session:
            invoice = session.scalar(
                self._invoice_query(account_id, with_lines).where(Invoice.id == invoice_id)
            )
            if invoice is None:
                raise NotFoundError("invoice", invoice_id, account_id)
            return invoice

    def get_invoice_for_job(self, account_id: int, job_id: int) -> Invoice | None:
        with self._scope() as session:
            return session.scalar(
                select(Invoice).where(Invoice.account_id == account_id, Invoice.job_id == job_id)
            )

    def list_invoices(
        self,
        account_id: int,
        statuses: Iterable[InvoiceStatus] | None = None,
        unsynced_only: bool = False,
        with_lines: bool = False,
    ) -> list[Invoice]:
        query = self._invoice_query(account_id, with_lines)
        if statuses is not None:
            query = query.where(Invoice.status.in_(list(statuses)))
        if unsynced_only:
            query = query.where(Invoice.external_id.is_(None))
        with self._scope() as session:
            return list(session.scalars(query.order_by(Invoice.id)))

    def create_invoice_for_job(
        self, account_id: int, job_id: int, draft: NewInvoice
    ) -> tuple[Invoice, bool]:
        """Create the invoice for a job, or return the one that already exists.

        Returns:
            (invoice, created) where created is False when the job was
            already invoiced.
        """
        draft.validate()

        try:
            with self._scope() as session:
                existing = session.scalar(
                    select(Invoice).where(
                        Invoice.account_id == account_id, Invoice.job_id == job_id
                    )
                )
                if existing is not None:
                    return existing, False

                invoice = Invoice(
                    account_id=account_id,
                    job_id=job_id,
                    customer_id=draft.customer_id,
                    customer_name=draft.customer_name,
                    subtotal=draft.subtotal,
                    tax=draft.tax,
                    total=draft.total,
                    status=draft.status,
                    due_date=draft.due_date,
                    line_items=[
                        LineItem(
                            description=line.description,
                            quantity=line.quantity,
                            unit_price=line.unit_price,
                            amount=line.amount,
                            service_type=line.service_type,
                        )
                        for line in draft.line_items
                    ],
                )
                session.add(invoice)
                session.flush()
                invoice.invoice_number = f"INV-{invoice.id:05d}"
                return invoice, True
        except IntegrityError:
            # A concurrent run invoiced the same job first
            logger.info("invoice_create_race", account_id=account_id, job_id=job_id)
            existing = self.get_invoice_for_job(account_id, job_id)
            if existing is None:
                raise
            return existing, False

    def update_invoice_status(
        self,
        account_id: int,
        invoice_id: int,
        status: InvoiceStatus,
        paid_at: datetime | None = _UNSET,
    ) -> Invoice:
        with self._scope() as session:
            invoice = self._load_invoice(session, account_id, invoice_id)
            invoice.status = status
            if paid_at is not _UNSET:
                invoice.paid_at = paid_at
            return invoice

    def mark_invoice_synced(
        self,
        account_id: int,
        invoice_id: int,
        external_id: str,
        synced_at: datetime,
        status: InvoiceStatus | None = None,
    ) -> Invoice:
        with self._scope() as session:
            invoice = self._load_invoice(session, account_id, invoice_id)
            invoice.external_id = external_id
            invoice.last_synced_at = synced_at
            if status is not None:
                invoice.status = status
            return invoice

    @staticmethod
    def _load_invoice(session: Session, account_id: int, invoice_id: int) -> Invoice:
        invoice = session.scalar(
            select(Invoice).where(Invoice.id == invoice_id, Invoice.account_id == account_id)
        )
        if invoice is None:
            raise NotFoundError("invoice", invoice_id, account_id)
        return invoice

    # === Payments ===

    @staticmethod
    def _paid_total(session: Session, invoice_id: int) -> int:
        total = session.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.invoice_id == invoice_id,
                Payment.status == PaymentStatus.SUCCEEDED,
            )
        )
        return int(total or 0)

    def completed_payment_total(self, account_id: int, invoice_id: int) -> int:
        """Sum of SUCCEEDED payments for an invoice, recomputed every call."""
        with self._scope() as session:
            self._load_invoice(session, account_id, invoice_id)
            return self._paid_total(session, invoice_id)

    def completed_totals_by_invoice(self, account_id: int) -> dict[int, int]:
        with self._scope() as session:
            rows = session.execute(
                select(Payment.invoice_id, func.sum(Payment.amount))
                .where(
                    Payment.account_id == account_id,
                    Payment.status == PaymentStatus.SUCCEEDED,
                    Payment.invoice_id.is_not(None),
                )
                .group_by(Payment.invoice_id)
            )
            return {invoice_id: int(total) for invoice_id, total in rows}

    def list_payments(self, account_id: int, invoice_id: int | None = None) -> list[Payment]:
        query = select(Payment).where(Payment.account_id == account_id)
        if invoice_id is not None:
            query = query.where(Payment.invoice_id == invoice_id)
        with self._scope() as session:
            return list(session.scalars(query.order_by(Payment.id)))

    def create_payment(
        self,
        account_id: int,
        amount: int,
        invoice_id: int | None = None,
        method: PaymentMethod = PaymentMethod.UNKNOWN,
        status: PaymentStatus = PaymentStatus.SUCCEEDED,
        occurred_at: datetime | None = None,
        external_id: str | None = None,
    ) -> tuple[Payment, bool]:
        """Create a payment; idempotent on external_id when one is given."""
        if amount <= 0:
            raise InvariantViolation(f"payment amount must be positive, got {amount}")

        try:
            with self._scope() as session:
                if external_id is not None:
                    existing = self._payment_by_external_id(session, account_id, external_id)
                    if existing is not None:
                        return existing, False
                if invoice_id is not None:
                    self._load_invoice(session, account_id, invoice_id)
                payment = Payment(
                    account_id=account_id,
                    invoice_id=invoice_id,
                    amount=amount,
                    method=method,
                    status=status,
                    occurred_at=occurred_at or utcnow(),
                    external_id=external_id,
                )
                session.add(payment)
                session.flush()
                return payment, True
        except IntegrityError:
            if external_id is None:
                raise
            with self._scope() as session:
                existing = self._payment_by_external_id(session, account_id, external_id)
            if existing is None:
                raise
            return existing, False

    @staticmethod
    def _payment_by_external_id(
        session: Session, account_id: int, external_id: str
    ) -> Payment | None:
        return session.scalar(
            select(Payment).where(
                Payment.account_id == account_id, Payment.external_id == external_id
            )
        )

    def apply_payment(
        self,
        account_id: int,
        invoice_id: int,
        amount: int,
        method: PaymentMethod,
        now: datetime | None = None,
    ) -> PaymentApplication:
        """Record a captured payment and settle the invoice in one transaction."""
        if amount <= 0:
            raise InvariantViolation(f"payment amount must be positive, got {amount}")
        now = now or utcnow()

        with self._scope() as session:
            invoice = self._load_invoice(session, account_id, invoice_id)
            payment = Payment(
                account_id=account_id,
                invoice_id=invoice_id,
                amount=amount,
                method=method,
                status=PaymentStatus.SUCCEEDED,
                occurred_at=now,
            )
            session.add(payment)
            session.flush()

            total_paid = self._paid_total(session, invoice_id)
            settle(invoice, total_paid, now)
            return PaymentApplication(payment=payment, invoice=invoice, total_paid=total_paid)

    # === Billing Issues ===

    @staticmethod
    def _find_open_issue(
        session: Session,
        account_id: int,
        invoice_id: int | None,
        issue_type: IssueType,
        summary: str | None = None,
    ) -> BillingIssue | None:
        query = select(BillingIssue).where(
            BillingIssue.account_id == account_id,
            BillingIssue.type == issue_type,
            BillingIssue.status == IssueStatus.OPEN,
        )
        if invoice_id is None:
            query = query.where(BillingIssue.invoice_id.is_(None))
        else:
            query = query.where(BillingIssue.invoice_id == invoice_id)
        if summary is not None:
            query = query.where(BillingIssue.summary == summary)
        return session.scalar(query.order_by(BillingIssue.id).limit(1))

    def find_open_issue(
        self,
        account_id: int,
        invoice_id: int | None,
        issue_type: IssueType,
        summary: str | None = None,
    ) -> BillingIssue | None:
        with self._scope() as session:
            return self._find_open_issue(session, account_id, invoice_id, issue_type, summary)

    @classmethod
    def _add_issue_if_absent(
        cls,
        session: Session,
        account_id: int,
        issue_type: IssueType,
        severity: Severity,
        summary: str,
        invoice_id: int | None,
        details: dict[str, Any] | None,
    ) -> tuple[BillingIssue, bool]:
        existing = cls._find_open_issue(session, account_id, invoice_id, issue_type, summary)
        if existing is not None:
            return existing, False
        issue = BillingIssue(
            account_id=account_id,
            invoice_id=invoice_id,
            type=issue_type,
            severity=severity,
            status=IssueStatus.OPEN,
            summary=summary,
            details=details or {},
        )
        session.add(issue)
        session.flush()
        return issue, True

    def create_issue_if_absent(
        self,
        account_id: int,
        issue_type: IssueType,
        severity: Severity,
        summary: str,
        invoice_id: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> tuple[BillingIssue, bool]:
        """Create an open issue unless one with the same key is already open.

        Returns:
            (issue, created) where issue is the pre-existing open issue when
            created is False.
        """
        try:
            with self._scope() as session:
                return self._add_issue_if_absent(
                    session, account_id, issue_type, severity, summary, invoice_id, details
                )
        except IntegrityError:
            existing = self.find_open_issue(account_id, invoice_id, issue_type, summary)
            if existing is None:
                raise
            return existing, False

    def list_issues(
        self,
        account_id: int,
        status: IssueStatus | None = None,
        issue_type: IssueType | None = None,
        invoice_id: int | None = None,
    ) -> list[BillingIssue]:
        query = select(BillingIssue).where(BillingIssue.account_id == account_id)
        if status is not None:
            query = query.where(BillingIssue.status == status)
        if issue_type is not None:
            query = query.where(BillingIssue.type == issue_type)
        if invoice_id is not None:
            query = query.where(BillingIssue.invoice_id == invoice_id)
        with self._scope() as session:
            return list(session.scalars(query.order_by(BillingIssue.id)))

    def _load_issue(self, session: Session, account_id: int, issue_id: int) -> BillingIssue:
        issue = session.scalar(
            select(BillingIssue).where(
                BillingIssue.id == issue_id, BillingIssue.account_id == account_id
            )
        )
        if issue is None:
            raise NotFoundError("billing_issue", issue_id, account_id)
        return issue

    def acknowledge_issue(self, account_id: int, issue_id: int) -> BillingIssue:
        with self._scope() as session:
            issue = self._load_issue(session, account_id, issue_id)
            if issue.status is IssueStatus.RESOLVED:
                raise LedgerError(f"billing issue {issue_id} is already resolved")
            issue.status = IssueStatus.ACKNOWLEDGED
            return issue

    def resolve_issue(
        self,
        account_id: int,
        issue_id: int,
        resolved_by: str,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> BillingIssue:
        with self._scope() as session:
            issue = self._load_issue(session, account_id, issue_id)
            if issue.status is not IssueStatus.RESOLVED:
                issue.status = IssueStatus.RESOLVED
                issue.resolved_at = now or utcnow()
                issue.resolved_by = resolved_by
                issue.resolution_notes = notes
            return issue

    def issue_summary(self, account_id: int) -> dict[str, Any]:
        """Counts of billing issues by status, type and severity."""
        issues = self.list_issues(account_id)
        return {
            "total": len(issues),
            "by_status": {
                status.value: sum(1 for i in issues if i.status is status)
                for status in IssueStatus
            },
            "by_type": {
                issue_type.value: sum(1 for i in issues if i.type is issue_type)
                for issue_type in IssueType
            },
            "by_severity": {
                severity.value: sum(1 for i in issues if i.severity is severity)
                for severity in Severity
            },
        }

    # === Integrations ===

    @staticmethod
    def _load_integration(
        session: Session, account_id: int, provider: str
    ) -> AccountIntegration:
        integration = session.scalar(
            select(AccountIntegration).where(
                AccountIntegration.account_id == account_id,
                AccountIntegration.provider == provider,
            )
        )
        if integration is None:
            raise NotFoundError("integration", provider, account_id)
        return integration

    def get_integration(self, account_id: int, provider: str) -> AccountIntegration:
        with self._scope() as session:
            return self._load_integration(session, account_id, provider)

    def update_integration_tokens(
        self,
        account_id: int,
        provider: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> AccountIntegration:
        with self._scope() as session:
            integration = self._load_integration(session, account_id, provider)
            integration.access_token = access_token
            if refresh_token:
                integration.refresh_token = refresh_token
            integration.token_expires_at = expires_at
            return integration

    def mark_integration_error(self, account_id: int, provider: str, error: str) -> None:
        with self._scope() as session:
            integration = self._load_integration(session, account_id, provider)
            integration.status = IntegrationStatus.ERROR
            integration.last_error = error

    def apply_payment_sync(
        self,
        account_id: int,
        provider: str,
        new_payments: list[NewPayment],
        invoice_totals: dict[int, int],
        synced_at: datetime,
    ) -> PaymentSyncWrite:
        """Persist one inbound sync batch as a single transaction.

        Args:
            new_payments: Payments staged during matching.
            invoice_totals: Paid total per affected invoice (existing
                completed payments plus the staged ones).
            synced_at: Becomes the integration's last_sync_at.
        """
        result = PaymentSyncWrite()

        with self._scope() as session:
            integration = self._load_integration(session, account_id, provider)

            payments = [
                Payment(
                    account_id=account_id,
                    invoice_id=staged.invoice_id,
                    amount=staged.amount,
                    method=staged.method,
                    status=staged.status,
                    occurred_at=staged.occurred_at,
                    external_id=staged.external_id,
                )
                for staged in new_payments
            ]
            session.add_all(payments)
            session.flush()
            result.payment_ids = [payment.id for payment in payments]

            latest_by_invoice: dict[int, datetime] = {}
            for staged in new_payments:
                if staged.invoice_id is None:
                    continue
                current = latest_by_invoice.get(staged.invoice_id)
                if current is None or staged.occurred_at > current:
                    latest_by_invoice[staged.invoice_id] = staged.occurred_at

            if invoice_totals:
                invoices = session.scalars(
                    select(Invoice).where(
                        Invoice.account_id == account_id,
                        Invoice.id.in_(list(invoice_totals)),
                    )
                )
                for invoice in invoices:
                    total_paid = invoice_totals[invoice.id]
                    settle(invoice, total_paid, latest_by_invoice.get(invoice.id, synced_at))
                    result.invoices_updated.append(invoice.id)

                    excess = total_paid - invoice.total
                    if excess > 0:
                        issue, created = self._add_issue_if_absent(
                            session,
                            account_id,
                            IssueType.OVERPAYMENT,
                            Severity.MED,
                            overpayment_summary(invoice, excess, "accounting sync"),
                            invoice.id,
                            {"overpayment": excess, "total_paid": total_paid},
                        )
                        if created:
                            result.overpayment_issue_ids.append(issue.id)

            integration.last_sync_at = synced_at
            integration.status = IntegrationStatus.CONNECTED
            integration.last_error = None

        return result

    # === Audit ===

    def record_audit(
        self,
        account_id: int,
        action: str,
        entity_type: str,
        entity_id: int | None,
        details: dict[str, Any] | None = None,
    ) -> AuditLog:
        with self._scope() as session:
            entry = AuditLog(
                account_id=account_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details or {},
            )
            session.add(entry)
            session.flush()
            return entry

    def list_audit(self, account_id: int, action: str | None = None) -> list[AuditLog]:
        query = select(AuditLog).where(AuditLog.account_id == account_id)
        if action is not None:
            query = query.where(AuditLog.action == action)
        with self._scope() as session:
            return list(session.scalars(query.order_by(AuditLog.id)))

    # === Summary ===

    def billing_summary(self, account_id: int, now: datetime | None = None) -> BillingSummary:
        """Operator dashboard figures, computed fresh from stored rows."""
        now = now or utcnow()
        today = now.date()
        window_start = now - timedelta(days=30)

        pending = self.list_invoices(account_id, statuses=PENDING_STATUSES)
        paid_by_invoice = self.completed_totals_by_invoice(account_id)

        with self._scope() as session:
            active_disputes = session.scalar(
                select(func.count(BillingIssue.id)).where(
                    BillingIssue.account_id == account_id,
                    BillingIssue.type == IssueType.DISPUTE,
                    BillingIssue.resolved_at.is_(None),
                )
            )
            recent_payments = session.scalar(
                select(func.coalesce(func.sum(Payment.amount), 0)).where(
                    Payment.account_id == account_id,
                    Payment.status == PaymentStatus.SUCCEEDED,
                    Payment.occurred_at >= window_start,
                )
            )

        return BillingSummary(
            pending_invoices=len(pending),
            overdue_invoices=sum(
                1 for inv in pending if inv.due_date is not None and inv.due_date < today
            ),
            active_disputes=int(active_disputes or 0),
            total_outstanding=sum(
                max(inv.total - paid_by_invoice.get(inv.id, 0), 0) for inv in pending
            ),
            recent_payments=int(recent_payments or 0),
        )
