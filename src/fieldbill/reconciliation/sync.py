"""External accounting sync: outbound invoices and inbound payments.

External failures are never retried inline. Each one becomes a HIGH
SYNC_ERROR billing issue and a failed result; the next scheduled run picks
the work up again, and duplicate checks make that re-run safe.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
import structlog

from fieldbill.accounting import (
    AccountingAPIClient,
    AccountingAPIError,
    ExternalPayment,
    TokenSet,
    build_invoice_payload,
    parse_external_payment,
)
from fieldbill.accounting.client import TokenCallback
from fieldbill.billing.audit import AuditAction, AuditRecorder
from fieldbill.config import Settings, get_settings
from fieldbill.ledger import (
    AccountIntegration,
    InvoiceStatus,
    IssueType,
    LedgerStore,
    NewPayment,
    NotFoundError,
    PaymentStatus,
    Severity,
)
from fieldbill.ledger.db import utcnow

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[AccountIntegration, TokenCallback], AccountingAPIClient]

EXTERNAL_ERRORS = (AccountingAPIError, httpx.HTTPError)

_MAX_ERROR_LENGTH = 300


def _default_client_factory(
    integration: AccountIntegration, on_tokens_refreshed: TokenCallback
) -> AccountingAPIClient:
    return AccountingAPIClient.for_integration(integration, on_tokens_refreshed)


@dataclass
class SyncResult:
    invoice_id: int
    success: bool
    external_id: str | None = None
    skipped: bool = False
    error: str | None = None
    billing_issue_id: int | None = None


@dataclass
class BatchSyncResult:
    total: int = 0
    synced: int = 0
    errored: int = 0
    results: list[SyncResult] = field(default_factory=list)


@dataclass
class PaymentSyncResult:
    success: bool = True
    fetched: int = 0
    created: int = 0
    skipped: int = 0
    unmatched: int = 0
    invalid: int = 0
    invoices_updated: int = 0
    synced_at: datetime | None = None
    error: str | None = None
    billing_issue_id: int | None = None
    overpayment_issue_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "fetched": self.fetched,
            "created": self.created,
            "skipped": self.skipped,
            "unmatched": self.unmatched,
            "invalid": self.invalid,
            "invoices_updated": self.invoices_updated,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
            "error": self.error,
        }


class SyncEngine:
    """Moves invoices out to, and payments in from, the accounting system."""

    def __init__(
        self,
        store: LedgerStore,
        client_factory: ClientFactory | None = None,
        settings: Settings | None = None,
    ):
        self._store = store
        self._client_factory = client_factory or _default_client_factory
        self._settings = settings or get_settings()
        self._provider = self._settings.accounting_provider
        self._audit = AuditRecorder(store)

    def _token_saver(self, account_id: int) -> TokenCallback:
        def save(tokens: TokenSet) -> None:
            self._store.update_integration_tokens(
                account_id,
                self._provider,
                tokens.access_token,
                tokens.refresh_token,
                tokens.expires_at,
            )

        return save

    def _client_for(self, integration: AccountIntegration) -> AccountingAPIClient:
        return self._client_factory(integration, self._token_saver(integration.account_id))

    def _record_failure(
        self,
        account_id: int,
        summary: str,
        error: str,
        invoice_id: int | None,
        action: AuditAction,
    ) -> int:
        """Surface an external failure as a HIGH issue; returns the issue id."""
        issue, created = self._store.create_issue_if_absent(
            account_id,
            IssueType.SYNC_ERROR,
            Severity.HIGH,
            summary,
            invoice_id=invoice_id,
            details={"provider": self._provider, "error": error},
        )
        try:
            self._store.mark_integration_error(account_id, self._provider, error)
        except NotFoundError:
            logger.warning(
                "integration_missing", account_id=account_id, provider=self._provider
            )
        self._audit.record(
            account_id,
            action,
            "invoice" if invoice_id is not None else "integration",
            invoice_id,
            {"error": error, "billing_issue_id": issue.id, "issue_created": created},
        )
        return issue.id

    # === Outbound ===

    async def sync_invoice(self, account_id: int, invoice_id: int) -> SyncResult:
        """Push one invoice to the accounting system unless it is already there."""
        log = logger.bind(account_id=account_id, invoice_id=invoice_id)

        try:
            invoice = self._store.get_invoice(account_id, invoice_id, with_lines=True)
        except NotFoundError as e:
            return SyncResult(invoice_id=invoice_id, success=False, error=str(e))

        if invoice.status is InvoiceStatus.DRAFT:
            return SyncResult(
                invoice_id=invoice_id, success=False, error="Draft invoices are not synced"
            )
        if invoice.external_id is not None:
            return SyncResult(
                invoice_id=invoice_id,
                success=True,
                external_id=invoice.external_id,
                skipped=True,
            )

        try:
            integration = self._store.get_integration(account_id, self._provider)
            async with self._client_for(integration) as client:
                response = await client.create_invoice(build_invoice_payload(invoice))
        except (NotFoundError, *EXTERNAL_ERRORS) as e:
            error = str(e)[:_MAX_ERROR_LENGTH]
            log.error("invoice_sync_failed", error=error, error_type=type(e).__name__)
            issue_id = self._record_failure(
                account_id,
                f"Invoice #{invoice.display_number} failed to sync: {error}",
                error,
                invoice_id,
                AuditAction.INVOICE_SYNC_FAILED,
            )
            return SyncResult(
                invoice_id=invoice_id, success=False, error=error, billing_issue_id=issue_id
            )

        external_id = str(response["id"])
        synced_at = utcnow()
        # Invoices already carrying payments keep their settled status
        new_status = (
            InvoiceStatus.SENT if invoice.status is InvoiceStatus.PENDING_APPROVAL else None
        )
        self._store.mark_invoice_synced(
            account_id, invoice_id, external_id, synced_at, status=new_status
        )
        self._audit.record(
            account_id,
            AuditAction.INVOICE_SYNCED,
            "invoice",
            invoice_id,
            {"external_id": external_id, "provider": self._provider},
        )
        log.info("invoice_synced", external_id=external_id)
        return SyncResult(invoice_id=invoice_id, success=True, external_id=external_id)

    async def sync_pending_invoices(self, account_id: int) -> BatchSyncResult:
        """Sync every non-draft invoice that has no external id yet."""
        candidates = [
            invoice
            for invoice in self._store.list_invoices(account_id, unsynced_only=True)
            if invoice.status is not InvoiceStatus.DRAFT
        ]
        batch = BatchSyncResult(total=len(candidates))
        for invoice in candidates:
            result = await self.sync_invoice(account_id, invoice.id)
            batch.results.append(result)
            if result.success:
                batch.synced += 1
            else:
                batch.errored += 1

        logger.info(
            "invoice_batch_synced",
            account_id=account_id,
            total=batch.total,
            synced=batch.synced,
            errored=batch.errored,
        )
        return batch

    # === Inbound ===

    async def _fetch_payments(
        self, integration: AccountIntegration, since: datetime | None
    ) -> list[dict[str, Any]]:
        modified_since = max(
            (ts for ts in (integration.last_sync_at, since) if ts is not None),
            default=None,
        )
        async with self._client_for(integration) as client:
            return await client.list_payments(modified_since=modified_since)

    async def sync_payments(
        self, account_id: int, since: datetime | None = None
    ) -> PaymentSyncResult:
        """Pull external payments and apply them to local invoices in one pass.

        Args:
            since: Optional lower bound; the later of this and the
                integration's last successful sync is used.
        """
        log = logger.bind(account_id=account_id, provider=self._provider)
        synced_at = utcnow()

        try:
            integration = self._store.get_integration(account_id, self._provider)
            raw_payments = await self._fetch_payments(integration, since)
        except (NotFoundError, *EXTERNAL_ERRORS) as e:
            error = str(e)[:_MAX_ERROR_LENGTH]
            log.error("payment_sync_failed", error=error, error_type=type(e).__name__)
            issue_id = self._record_failure(
                account_id,
                f"Payment sync from {self._provider} failed: {error}",
                error,
                None,
                AuditAction.PAYMENT_SYNC_FAILED,
            )
            return PaymentSyncResult(success=False, error=error, billing_issue_id=issue_id)

        result = PaymentSyncResult(fetched=len(raw_payments), synced_at=synced_at)

        # Load everything once; matching below is dict lookups only
        known_external_ids = {
            payment.external_id
            for payment in self._store.list_payments(account_id)
            if payment.external_id is not None
        }
        invoice_ids_by_external = {
            invoice.external_id: invoice.id
            for invoice in self._store.list_invoices(account_id)
            if invoice.external_id is not None
        }
        paid_totals = self._store.completed_totals_by_invoice(account_id)

        new_payments: list[NewPayment] = []
        invoice_totals: dict[int, int] = {}
        for raw in raw_payments:
            try:
                external = parse_external_payment(raw, fallback_time=synced_at)
            except ValueError as e:
                result.invalid += 1
                log.warning("payment_record_invalid", error=str(e), record_id=raw.get("id"))
                continue
            if external.amount <= 0:
                result.invalid += 1
                log.warning(
                    "payment_record_invalid",
                    error="non-positive amount",
                    record_id=external.external_id,
                )
                continue
            if external.external_id in known_external_ids:
                result.skipped += 1
                continue
            known_external_ids.add(external.external_id)

            invoice_id = self._match_invoice(external, invoice_ids_by_external)
            if invoice_id is None:
                result.unmatched += 1
            new_payments.append(
                NewPayment(
                    external_id=external.external_id,
                    amount=external.amount,
                    occurred_at=external.occurred_at,
                    invoice_id=invoice_id,
                    method=external.method,
                    status=external.status,
                )
            )
            if invoice_id is not None and external.status is PaymentStatus.SUCCEEDED:
                invoice_totals[invoice_id] = (
                    invoice_totals.get(invoice_id, paid_totals.get(invoice_id, 0))
                    + external.amount
                )

        write = self._store.apply_payment_sync(
            account_id, self._provider, new_payments, invoice_totals, synced_at
        )
        result.created = len(write.payment_ids)
        result.invoices_updated = len(write.invoices_updated)
        result.overpayment_issue_ids = write.overpayment_issue_ids

        for issue_id in write.overpayment_issue_ids:
            self._audit.record(
                account_id,
                AuditAction.OVERPAYMENT_DETECTED,
                "billing_issue",
                issue_id,
                {"source": self._provider},
            )
        self._audit.record(
            account_id, AuditAction.PAYMENTS_SYNCED, "integration", None, result.to_dict()
        )
        log.info(
            "payments_synced",
            fetched=result.fetched,
            created=result.created,
            skipped=result.skipped,
            unmatched=result.unmatched,
            invoices_updated=result.invoices_updated,
        )
        return result

    @staticmethod
    def _match_invoice(
        external: ExternalPayment, invoice_ids_by_external: dict[str, int]
    ) -> int | None:
        if external.invoice_external_id is None:
            return None
        return invoice_ids_by_external.get(external.invoice_external_id)
