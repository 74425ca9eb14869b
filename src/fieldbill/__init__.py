"""Fieldbill - billing lifecycle and reconciliation for field services accounts."""

__version__ = "0.1.0"

from fieldbill.accounting import AccountingAPIClient, AccountingAPIError
from fieldbill.billing import BillingOrchestrator, BillingStage, StageResult
from fieldbill.config import configure_logging, get_settings
from fieldbill.ledger import LedgerStore
from fieldbill.reconciliation import InternalReconciler, SyncEngine
from fieldbill.suggestions import ClaudeSuggester, OpenAISuggester, build_suggester

__all__ = [
    # Version
    "__version__",
    # Ledger
    "LedgerStore",
    # Billing
    "BillingOrchestrator",
    "BillingStage",
    "StageResult",
    # Reconciliation & sync
    "InternalReconciler",
    "SyncEngine",
    # Accounting
    "AccountingAPIClient",
    "AccountingAPIError",
    # Suggestions
    "ClaudeSuggester",
    "OpenAISuggester",
    "build_suggester",
    # Config
    "get_settings",
    "configure_logging",
]
