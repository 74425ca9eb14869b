"""Tests for the account-scoped ledger store."""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import StatementError

from fieldbill.ledger import (
    IntegrationStatus,
    InvariantViolation,
    InvoiceStatus,
    IssueStatus,
    IssueType,
    LedgerError,
    NewInvoice,
    NewLineItem,
    NewPayment,
    NotFoundError,
    PaymentMethod,
    PaymentStatus,
    Severity,
)

from conftest import ACCOUNT_ID, NOW, OTHER_ACCOUNT_ID


def make_draft(amount: int = 6000, tax: int = 0) -> NewInvoice:
    return NewInvoice(
        subtotal=amount,
        tax=tax,
        total=amount + tax,
        status=InvoiceStatus.DRAFT,
        due_date=date(2024, 7, 30),
        line_items=[
            NewLineItem(
                description="Lawn mowing",
                quantity=Decimal("1"),
                unit_price=amount,
                amount=amount,
                service_type="mowing",
            )
        ],
        customer_id=501,
        customer_name="Pat Rivera",
    )


class TestInvoices:
    """Tests for invoice creation and lookup."""

    def test_create_invoice_for_job(self, store):
        invoice, created = store.create_invoice_for_job(ACCOUNT_ID, 10, make_draft())

        assert created is True
        assert invoice.invoice_number == f"INV-{invoice.id:05d}"
        assert invoice.total == invoice.subtotal + invoice.tax

        loaded = store.get_invoice(ACCOUNT_ID, invoice.id, with_lines=True)
        assert len(loaded.line_items) == 1
        assert loaded.line_items[0].amount == 6000

    def test_create_is_idempotent_per_job(self, store):
        """Test that a second create for the same job returns the first invoice."""
        first, _ = store.create_invoice_for_job(ACCOUNT_ID, 10, make_draft())
        second, created = store.create_invoice_for_job(ACCOUNT_ID, 10, make_draft(9000))

        assert created is False
        assert second.id == first.id
        assert second.total == 6000
        assert len(store.list_invoices(ACCOUNT_ID)) == 1

    def test_same_job_id_in_other_account(self, store):
        store.create_invoice_for_job(ACCOUNT_ID, 10, make_draft())
        _, created = store.create_invoice_for_job(OTHER_ACCOUNT_ID, 10, make_draft())

        assert created is True

    def test_total_invariant_enforced(self, store):
        draft = make_draft()
        draft.total = draft.subtotal + 1

        with pytest.raises(InvariantViolation):
            store.create_invoice_for_job(ACCOUNT_ID, 10, draft)

    def test_lines_must_sum_to_subtotal(self, store):
        draft = make_draft()
        draft.line_items[0].amount = 100

        with pytest.raises(InvariantViolation, match="line items"):
            store.create_invoice_for_job(ACCOUNT_ID, 10, draft)

    def test_get_invoice_is_account_scoped(self, store, seed):
        invoice = seed.invoice(total=5000)

        with pytest.raises(NotFoundError) as exc_info:
            store.get_invoice(OTHER_ACCOUNT_ID, invoice.id)

        assert exc_info.value.account_id == OTHER_ACCOUNT_ID

    def test_list_unsynced(self, store, seed):
        seed.invoice(total=5000, external_id="ext-1")
        pending = seed.invoice(total=7000)

        unsynced = store.list_invoices(ACCOUNT_ID, unsynced_only=True)

        assert [inv.id for inv in unsynced] == [pending.id]


class TestPayments:
    """Tests for payment recording and settlement."""

    def test_apply_partial_then_full(self, store, seed):
        invoice = seed.invoice(total=15000, tax=1111)

        first = store.apply_payment(ACCOUNT_ID, invoice.id, 10000, PaymentMethod.CARD, now=NOW)
        assert first.invoice.status is InvoiceStatus.PARTIAL
        assert first.invoice.paid_at is None
        assert first.remaining == 5000

        second = store.apply_payment(ACCOUNT_ID, invoice.id, 5000, PaymentMethod.CASH, now=NOW)
        assert second.invoice.status is InvoiceStatus.PAID
        assert second.invoice.paid_at == NOW
        assert second.total_paid == 15000

    def test_paid_total_ignores_failed_payments(self, store, seed):
        invoice = seed.invoice(total=15000)
        seed.payment(invoice.id, 4000)
        seed.payment(invoice.id, 9000, status=PaymentStatus.FAILED)

        assert store.completed_payment_total(ACCOUNT_ID, invoice.id) == 4000
        assert store.completed_totals_by_invoice(ACCOUNT_ID) == {invoice.id: 4000}

    def test_non_positive_amount_rejected(self, store, seed):
        invoice = seed.invoice(total=15000)

        with pytest.raises(InvariantViolation):
            store.apply_payment(ACCOUNT_ID, invoice.id, 0, PaymentMethod.CASH)

    def test_create_payment_idempotent_on_external_id(self, store, seed):
        invoice = seed.invoice(total=15000)

        first, created = store.create_payment(
            ACCOUNT_ID, 5000, invoice_id=invoice.id, external_id="pay-9"
        )
        again, created_again = store.create_payment(
            ACCOUNT_ID, 5000, invoice_id=invoice.id, external_id="pay-9"
        )

        assert created is True
        assert created_again is False
        assert again.id == first.id
        assert len(store.list_payments(ACCOUNT_ID)) == 1


class TestIssues:
    """Tests for billing issue dedup and lifecycle."""

    def test_create_if_absent_dedupes_open_issue(self, store, seed):
        invoice = seed.invoice(total=5000)

        issue, created = store.create_issue_if_absent(
            ACCOUNT_ID, IssueType.VARIANCE, Severity.HIGH, "Mismatch", invoice_id=invoice.id
        )
        again, created_again = store.create_issue_if_absent(
            ACCOUNT_ID, IssueType.VARIANCE, Severity.HIGH, "Mismatch", invoice_id=invoice.id
        )

        assert created is True
        assert created_again is False
        assert again.id == issue.id

    def test_resolved_issue_allows_new_one(self, store, seed):
        invoice = seed.invoice(total=5000)
        issue, _ = store.create_issue_if_absent(
            ACCOUNT_ID, IssueType.DISPUTE, Severity.HIGH, "Wrong lawn", invoice_id=invoice.id
        )

        resolved = store.resolve_issue(ACCOUNT_ID, issue.id, resolved_by="ops", notes="credited")
        reopened, created = store.create_issue_if_absent(
            ACCOUNT_ID, IssueType.DISPUTE, Severity.HIGH, "Wrong lawn", invoice_id=invoice.id
        )

        assert resolved.status is IssueStatus.RESOLVED
        assert resolved.resolved_by == "ops"
        assert created is True
        assert reopened.id != issue.id

    def test_acknowledge(self, store):
        issue, _ = store.create_issue_if_absent(
            ACCOUNT_ID, IssueType.SYNC_ERROR, Severity.HIGH, "Sync failed"
        )

        acked = store.acknowledge_issue(ACCOUNT_ID, issue.id)

        assert acked.status is IssueStatus.ACKNOWLEDGED

    def test_acknowledge_resolved_rejected(self, store):
        issue, _ = store.create_issue_if_absent(
            ACCOUNT_ID, IssueType.SYNC_ERROR, Severity.HIGH, "Sync failed"
        )
        store.resolve_issue(ACCOUNT_ID, issue.id, resolved_by="ops")

        with pytest.raises(LedgerError):
            store.acknowledge_issue(ACCOUNT_ID, issue.id)

    def test_issue_summary(self, store):
        store.create_issue_if_absent(ACCOUNT_ID, IssueType.SYNC_ERROR, Severity.HIGH, "a")
        store.create_issue_if_absent(ACCOUNT_ID, IssueType.OVERDUE, Severity.LOW, "b")

        summary = store.issue_summary(ACCOUNT_ID)

        assert summary["total"] == 2
        assert summary["by_status"]["OPEN"] == 2
        assert summary["by_type"]["SYNC_ERROR"] == 1
        assert summary["by_severity"]["LOW"] == 1


class TestPaymentSyncWrite:
    """Tests for the single-transaction inbound sync write."""

    def test_applies_batch_and_advances_sync(self, store, seed):
        seed.integration()
        invoice = seed.invoice(total=10000, external_id="ext-inv-1")
        occurred = NOW - timedelta(days=1)

        write = store.apply_payment_sync(
            ACCOUNT_ID,
            "quickbooks",
            [NewPayment(external_id="pay-1", amount=12000, occurred_at=occurred, invoice_id=invoice.id)],
            {invoice.id: 12000},
            synced_at=NOW,
        )

        loaded = store.get_invoice(ACCOUNT_ID, invoice.id)
        integration = store.get_integration(ACCOUNT_ID, "quickbooks")
        assert len(write.payment_ids) == 1
        assert write.invoices_updated == [invoice.id]
        assert len(write.overpayment_issue_ids) == 1
        assert loaded.status is InvoiceStatus.PAID
        assert loaded.paid_at == occurred
        assert integration.last_sync_at == NOW
        assert integration.status is IntegrationStatus.CONNECTED

    def test_missing_integration_writes_nothing(self, store, seed):
        invoice = seed.invoice(total=10000)

        with pytest.raises(NotFoundError):
            store.apply_payment_sync(
                ACCOUNT_ID,
                "quickbooks",
                [NewPayment(external_id="pay-1", amount=100, occurred_at=NOW, invoice_id=invoice.id)],
                {invoice.id: 100},
                synced_at=NOW,
            )

        assert store.list_payments(ACCOUNT_ID) == []


class TestBillingSummary:
    """Tests for the operator dashboard summary."""

    def test_summary_figures(self, store, seed):
        today = NOW.date()
        overdue = seed.invoice(total=10000, due_date=today - timedelta(days=3))
        partial = seed.invoice(total=8000, status=InvoiceStatus.PARTIAL, due_date=today)
        seed.invoice(total=4000, status=InvoiceStatus.DRAFT)
        seed.invoice(total=3000, status=InvoiceStatus.PAID)
        seed.payment(partial.id, 3000, occurred_at=NOW - timedelta(days=2))
        seed.payment(overdue.id, 1000, occurred_at=NOW - timedelta(days=45))
        store.create_issue_if_absent(
            ACCOUNT_ID, IssueType.DISPUTE, Severity.HIGH, "Wrong lawn", invoice_id=overdue.id
        )

        summary = store.billing_summary(ACCOUNT_ID, now=NOW)

        assert summary.pending_invoices == 2
        assert summary.overdue_invoices == 1
        assert summary.active_disputes == 1
        assert summary.total_outstanding == (10000 - 1000) + (8000 - 3000)
        assert summary.recent_payments == 3000

    def test_summary_is_account_scoped(self, store, seed):
        seed.invoice(total=10000, account_id=OTHER_ACCOUNT_ID)

        summary = store.billing_summary(ACCOUNT_ID, now=NOW)

        assert summary.to_dict() == {
            "pending_invoices": 0,
            "overdue_invoices": 0,
            "active_disputes": 0,
            "total_outstanding": 0,
            "recent_payments": 0,
        }


def test_naive_datetimes_rejected(store, seed):
    """Test that the ledger refuses timestamps without a timezone."""
    invoice = seed.invoice(total=10000)

    with pytest.raises(StatementError):
        store.apply_payment(ACCOUNT_ID, invoice.id, 100, PaymentMethod.CASH, now=datetime(2024, 1, 1))

    assert store.completed_payment_total(ACCOUNT_ID, invoice.id) == 0
