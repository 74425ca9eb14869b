"""Closed enumerations for every status-like ledger column.

Stored text drifts (lower-case rows written by older clients, ``COMPLETED``
vs ``SUCCEEDED``), so each enum exposes ``normalize`` and the storage layer
runs every value through it on the way in and out.
"""

from enum import Enum
from typing import Any


class _NormalizedEnum(str, Enum):
    """String enum with a single canonical normalization step."""

    @classmethod
    def normalize(cls, value: Any) -> "_NormalizedEnum":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"{cls.__name__}: cannot normalize {value!r}")
        key = value.strip().upper().replace("-", "_").replace(" ", "_")
        key = _ALIASES.get(cls.__name__, {}).get(key, key)
        try:
            return cls(key)
        except ValueError as exc:
            raise ValueError(f"{cls.__name__}: unknown value {value!r}") from exc


class InvoiceStatus(_NormalizedEnum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    SENT = "SENT"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    DISPUTED = "DISPUTED"


class PaymentStatus(_NormalizedEnum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    @property
    def is_completed(self) -> bool:
        return self is PaymentStatus.SUCCEEDED


class PaymentMethod(_NormalizedEnum):
    CASH = "CASH"
    CHECK = "CHECK"
    CARD = "CARD"
    ACH = "ACH"
    UNKNOWN = "UNKNOWN"


class IssueType(_NormalizedEnum):
    VARIANCE = "VARIANCE"
    OVERPAYMENT = "OVERPAYMENT"
    SYNC_ERROR = "SYNC_ERROR"
    DUPLICATE = "DUPLICATE"
    MISSING_PAYMENT = "MISSING_PAYMENT"
    OVERDUE = "OVERDUE"
    DISPUTE = "DISPUTE"


class Severity(_NormalizedEnum):
    LOW = "LOW"
    MED = "MED"
    HIGH = "HIGH"


class IssueStatus(_NormalizedEnum):
    OPEN = "OPEN"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"


class IntegrationStatus(_NormalizedEnum):
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"
    DISCONNECTED = "DISCONNECTED"


class JobStatus(_NormalizedEnum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


_ALIASES: dict[str, dict[str, str]] = {
    "InvoiceStatus": {"PENDING": "PENDING_APPROVAL", "PARTIALLY_PAID": "PARTIAL"},
    "PaymentStatus": {"COMPLETED": "SUCCEEDED", "PAID": "SUCCEEDED", "VOIDED": "REFUNDED"},
    "PaymentMethod": {
        "CREDIT_CARD": "CARD",
        "DEBIT_CARD": "CARD",
        "CHEQUE": "CHECK",
        "BANK_TRANSFER": "ACH",
    },
    "Severity": {"MEDIUM": "MED", "INFO": "LOW", "WARNING": "MED", "CRITICAL": "HIGH"},
    "JobStatus": {"COMPLETE": "COMPLETED", "DONE": "COMPLETED", "CANCELED": "CANCELLED"},
}
