"""Reconciliation and external accounting sync."""

from fieldbill.reconciliation.internal import (
    Finding,
    InternalReconciler,
    ReconciliationReport,
    check_invoice,
)
from fieldbill.reconciliation.sync import (
    BatchSyncResult,
    PaymentSyncResult,
    SyncEngine,
    SyncResult,
)

__all__ = [
    "BatchSyncResult",
    "Finding",
    "InternalReconciler",
    "PaymentSyncResult",
    "ReconciliationReport",
    "SyncEngine",
    "SyncResult",
    "check_invoice",
]
