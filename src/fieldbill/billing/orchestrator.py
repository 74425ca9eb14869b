"""Billing lifecycle orchestrator.

Manages the post-job-completion billing lifecycle:
1. JOB_COMPLETED -> invoice generation (content suggestion + fallback pricing)
2. INVOICE_SENT -> payment tracking, overpayment detection
3. OVERDUE sweep -> billing issues scaled by days overdue
4. DISPUTE -> billing issue handed to remediation

Every handler is safe to re-run: existing invoices and open issues are
looked up by their natural keys before anything is written.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from fieldbill.billing.audit import AuditAction, AuditRecorder
from fieldbill.billing.pricing import (
    PricingRules,
    build_pricing_rules,
    compute_totals,
    fallback_line_item,
    lines_from_suggestion,
)
from fieldbill.billing.stages import BillingStage, ErrorCode, StageResult, infer_stage
from fieldbill.config import BillingPolicy, Settings, get_settings, policy_for_account
from fieldbill.ledger import (
    InvariantViolation,
    InvoiceStatus,
    IssueType,
    Job,
    JobStatus,
    LedgerStore,
    NewInvoice,
    NewLineItem,
    NotFoundError,
    PaymentMethod,
    Severity,
)
from fieldbill.ledger.db import utcnow
from fieldbill.ledger.store import BillingSummary, overpayment_summary
from fieldbill.suggestions import ContentSuggester, SuggestionContext

logger = structlog.get_logger(__name__)


@dataclass
class PricedInvoice:
    """Line items and the confidence behind them."""

    line_items: list[NewLineItem]
    confidence: float
    used_fallback: bool
    reasoning: str = ""


@dataclass
class OverdueSweepResult:
    processed: int = 0
    overdue_count: int = 0
    issue_ids: list[int] = field(default_factory=list)


def overdue_severity(days_overdue: int, policy: BillingPolicy) -> Severity:
    if days_overdue > policy.overdue_high_days:
        return Severity.HIGH
    if days_overdue > policy.overdue_med_days:
        return Severity.MED
    return Severity.LOW


class BillingOrchestrator:
    """Drives a job from completion to a closed invoice."""

    def __init__(
        self,
        store: LedgerStore,
        suggester: ContentSuggester | None = None,
        settings: Settings | None = None,
    ):
        self._store = store
        self._suggester = suggester
        self._settings = settings or get_settings()
        self._audit = AuditRecorder(store)

    def _policy(self, account_id: int) -> BillingPolicy:
        return policy_for_account(account_id, settings=self._settings)

    # === Job completion ===

    async def _price_job(
        self, job: Job, rules: PricingRules, business_name: str, policy: BillingPolicy
    ) -> PricedInvoice:
        """Ask the suggester for line items, falling back to rule pricing."""
        log = logger.bind(account_id=job.account_id, job_id=job.id)

        if self._suggester is not None:
            context = SuggestionContext(
                job_id=job.id,
                service_type=job.service_type,
                business_name=business_name,
                description=job.description,
                customer_name=job.customer_name,
                area_sqft=job.area_sqft,
                hours=job.hours,
                quoted_amount=job.quoted_amount,
                pricing=rules.snapshot(),
            )
            try:
                suggestion = await self._suggester.suggest(context)
            except Exception as e:
                # Collaborator failures are recovered locally, never surfaced
                log.warning("suggestion_failed", error=str(e), error_type=type(e).__name__)
            else:
                lines = lines_from_suggestion(suggestion, job.service_type)
                if lines and sum(line.amount for line in lines) > 0:
                    return PricedInvoice(
                        line_items=lines,
                        confidence=suggestion.confidence,
                        used_fallback=False,
                        reasoning=suggestion.reasoning,
                    )
                log.warning("suggestion_empty", line_items=len(lines))

        log.info("fallback_pricing_used")
        return PricedInvoice(
            line_items=[fallback_line_item(rules, job)],
            confidence=policy.fallback_confidence,
            used_fallback=True,
            reasoning="Deterministic pricing from account rate card",
        )

    async def handle_job_completed(self, account_id: int, job_id: int) -> StageResult:
        """Generate the invoice for a completed job (at most once per job)."""
        log = logger.bind(account_id=account_id, job_id=job_id)
        log.info("processing_job_completion")

        job = self._store.get_job(account_id, job_id)
        if job is None:
            return StageResult.failure(
                ErrorCode.INVALID_STATE, f"Job {job_id} not found for account {account_id}"
            )
        if job.status is not JobStatus.COMPLETED:
            return StageResult.failure(
                ErrorCode.INVALID_STATE, f"Job {job_id} is not completed (status {job.status.value})"
            )

        existing = self._store.get_invoice_for_job(account_id, job_id)
        if existing is not None:
            log.info("invoice_already_exists", invoice_id=existing.id)
            paid = self._store.completed_payment_total(account_id, existing.id)
            stage = infer_stage(existing, paid)
            return StageResult(
                success=True,
                next_stage=stage,
                requires_approval=existing.status is InvoiceStatus.PENDING_APPROVAL,
                data={"invoice_id": existing.id, "created": False},
            )

        policy = self._policy(account_id)
        profile = self._store.get_billing_profile(account_id)
        rules = build_pricing_rules(profile, policy)
        business_name = (profile.business_name if profile else "") or "Field Services"

        priced = await self._price_job(job, rules, business_name, policy)
        subtotal, tax, total = compute_totals(priced.line_items, rules.tax_rate)

        requires_approval = (
            priced.confidence < policy.approval_confidence_threshold
            or total > policy.high_value_threshold
        )
        terms_days = (
            profile.payment_terms_days
            if profile and profile.payment_terms_days is not None
            else self._settings.default_payment_terms_days
        )

        draft = NewInvoice(
            subtotal=subtotal,
            tax=tax,
            total=total,
            status=InvoiceStatus.PENDING_APPROVAL if requires_approval else InvoiceStatus.DRAFT,
            due_date=(utcnow() + timedelta(days=terms_days)).date(),
            line_items=priced.line_items,
            customer_id=job.customer_id,
            customer_name=job.customer_name,
        )
        try:
            invoice, created = self._store.create_invoice_for_job(account_id, job_id, draft)
        except InvariantViolation as e:
            log.error("invoice_invariant_violation", error=str(e))
            return StageResult.failure(ErrorCode.INVALID_STATE, str(e))

        if not created:
            # Lost a race with a concurrent run; report the winner
            paid = self._store.completed_payment_total(account_id, invoice.id)
            return StageResult(
                success=True,
                next_stage=infer_stage(invoice, paid),
                requires_approval=invoice.status is InvoiceStatus.PENDING_APPROVAL,
                data={"invoice_id": invoice.id, "created": False},
            )

        self._audit.record(
            account_id,
            AuditAction.INVOICE_GENERATED,
            "invoice",
            invoice.id,
            {
                "job_id": job_id,
                "total": total,
                "confidence": priced.confidence,
                "used_fallback": priced.used_fallback,
                "reasoning": priced.reasoning,
                "requires_approval": requires_approval,
            },
        )
        log.info(
            "invoice_generated",
            invoice_id=invoice.id,
            total=total,
            confidence=priced.confidence,
            requires_approval=requires_approval,
        )

        return StageResult(
            success=True,
            next_stage=(
                BillingStage.INVOICE_PENDING_APPROVAL
                if requires_approval
                else BillingStage.INVOICE_DRAFT
            ),
            requires_approval=requires_approval,
            data={
                "invoice_id": invoice.id,
                "created": True,
                "confidence": priced.confidence,
                "used_fallback": priced.used_fallback,
            },
        )

    # === Payments ===

    async def handle_payment_received(
        self,
        account_id: int,
        invoice_id: int,
        amount: int,
        method: PaymentMethod | str = PaymentMethod.UNKNOWN,
    ) -> StageResult:
        """Record a payment and settle the invoice from the recomputed paid sum."""
        log = logger.bind(account_id=account_id, invoice_id=invoice_id)
        log.info("processing_payment", amount=amount)

        if amount <= 0:
            return StageResult.failure(
                ErrorCode.INVALID_STATE, f"Payment amount must be positive, got {amount}"
            )
        try:
            method = PaymentMethod.normalize(method)
        except ValueError as e:
            return StageResult.failure(ErrorCode.INVALID_STATE, str(e))

        try:
            applied = self._store.apply_payment(account_id, invoice_id, amount, method)
        except NotFoundError as e:
            return StageResult.failure(ErrorCode.NOT_FOUND, str(e))

        invoice = applied.invoice
        remaining = applied.remaining
        self._audit.record(
            account_id,
            AuditAction.PAYMENT_RECEIVED,
            "invoice",
            invoice_id,
            {
                "amount": amount,
                "total_paid": applied.total_paid,
                "remaining": remaining,
                "method": method.value,
                "payment_id": applied.payment.id,
                "status": invoice.status.value,
            },
        )

        data: dict[str, Any] = {
            "invoice_id": invoice_id,
            "payment_id": applied.payment.id,
            "total_paid": applied.total_paid,
            "remaining": max(remaining, 0),
            "status": invoice.status.value,
        }

        if remaining < 0:
            excess = -remaining
            issue, created = self._store.create_issue_if_absent(
                account_id,
                IssueType.OVERPAYMENT,
                Severity.MED,
                overpayment_summary(invoice, excess, f"payment #{applied.payment.id}"),
                invoice_id=invoice_id,
                details={
                    "overpayment": excess,
                    "payment_id": applied.payment.id,
                    "total_paid": applied.total_paid,
                    "invoice_total": invoice.total,
                },
            )
            if created:
                self._audit.record(
                    account_id,
                    AuditAction.OVERPAYMENT_DETECTED,
                    "billing_issue",
                    issue.id,
                    {"invoice_id": invoice_id, "overpayment": excess},
                )
            log.warning("overpayment_detected", overpayment=excess, billing_issue_id=issue.id)
            data.update(overpayment=excess, billing_issue_id=issue.id)

        log.info("payment_applied", total_paid=applied.total_paid, status=invoice.status.value)
        return StageResult(
            success=True,
            next_stage=infer_stage(invoice, applied.total_paid),
            data=data,
        )

    # === Disputes ===

    async def handle_dispute_detected(
        self, account_id: int, invoice_id: int, reason: str
    ) -> StageResult:
        """Open a HIGH dispute issue and hand off to remediation."""
        log = logger.bind(account_id=account_id, invoice_id=invoice_id)
        log.info("dispute_detected")

        try:
            invoice = self._store.get_invoice(account_id, invoice_id)
        except NotFoundError as e:
            return StageResult.failure(ErrorCode.NOT_FOUND, str(e))

        summary = reason.strip() or f"Dispute on invoice {invoice.display_number}"
        issue, created = self._store.create_issue_if_absent(
            account_id,
            IssueType.DISPUTE,
            Severity.HIGH,
            summary,
            invoice_id=invoice_id,
            details={
                "source": "customer_complaint",
                "invoice_total": invoice.total,
                "job_id": invoice.job_id,
                "previous_status": invoice.status.value,
            },
        )
        self._store.update_invoice_status(account_id, invoice_id, InvoiceStatus.DISPUTED)

        if created:
            self._audit.record(
                account_id,
                AuditAction.DISPUTE_CREATED,
                "billing_issue",
                issue.id,
                {"invoice_id": invoice_id, "reason": summary},
            )

        return StageResult(
            success=True,
            next_stage=BillingStage.REMEDIATION,
            data={"billing_issue_id": issue.id, "created": created},
        )

    # === Overdue sweep ===

    async def check_overdue_invoices(
        self, account_id: int, now: datetime | None = None
    ) -> OverdueSweepResult:
        """Open one OVERDUE issue per past-due SENT invoice."""
        now = now or utcnow()
        today = now.date()
        policy = self._policy(account_id)
        result = OverdueSweepResult()

        for invoice in self._store.list_invoices(account_id, statuses=[InvoiceStatus.SENT]):
            result.processed += 1
            if invoice.due_date is None or invoice.due_date >= today:
                continue
            result.overdue_count += 1

            if self._store.find_open_issue(account_id, invoice.id, IssueType.OVERDUE):
                continue

            days_overdue = (today - invoice.due_date).days
            issue, created = self._store.create_issue_if_absent(
                account_id,
                IssueType.OVERDUE,
                overdue_severity(days_overdue, policy),
                f"Invoice #{invoice.display_number} is {days_overdue} days overdue",
                invoice_id=invoice.id,
                details={"days_overdue": days_overdue, "amount": invoice.total},
            )
            if not created:
                continue
            result.issue_ids.append(issue.id)
            self._audit.record(
                account_id,
                AuditAction.OVERDUE_DETECTED,
                "billing_issue",
                issue.id,
                {"invoice_id": invoice.id, "days_overdue": days_overdue},
            )

        logger.info(
            "overdue_sweep_completed",
            account_id=account_id,
            processed=result.processed,
            overdue=result.overdue_count,
            issues_created=len(result.issue_ids),
        )
        return result

    # === Summary ===

    def get_billing_summary(self, account_id: int, now: datetime | None = None) -> BillingSummary:
        return self._store.billing_summary(account_id, now=now)
