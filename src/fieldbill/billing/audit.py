"""Audit trail for billing state transitions.

The business mutation is the source of truth: an audit write that fails is
logged as an operational anomaly and never undoes the mutation.
"""

from enum import Enum
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from fieldbill.ledger import LedgerStore

logger = structlog.get_logger(__name__)


class AuditAction(str, Enum):
    INVOICE_GENERATED = "invoice_generated"
    PAYMENT_RECEIVED = "payment_received"
    OVERPAYMENT_DETECTED = "overpayment_detected"
    DISPUTE_CREATED = "dispute_created"
    OVERDUE_DETECTED = "overdue_invoice_detected"
    VARIANCE_DETECTED = "variance_detected"
    INVOICE_SYNCED = "invoice_synced"
    INVOICE_SYNC_FAILED = "invoice_sync_failed"
    PAYMENTS_SYNCED = "payments_synced"
    PAYMENT_SYNC_FAILED = "payment_sync_failed"


class AuditRecorder:
    """Writes audit records through the ledger store."""

    def __init__(self, store: LedgerStore):
        self._store = store

    def record(
        self,
        account_id: int,
        action: AuditAction,
        entity_type: str,
        entity_id: int | None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Write one audit entry. Returns False when the write failed."""
        try:
            self._store.record_audit(
                account_id, action.value, entity_type, entity_id, details or {}
            )
        except SQLAlchemyError as e:
            logger.error(
                "audit_write_failed",
                account_id=account_id,
                action=action.value,
                entity_type=entity_type,
                entity_id=entity_id,
                error=str(e),
            )
            return False
        return True
