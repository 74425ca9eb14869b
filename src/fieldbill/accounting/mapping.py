"""Translation between ledger records and the accounting system's JSON shapes."""

from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from fieldbill.ledger import Invoice, PaymentMethod, PaymentStatus

_CENTS = Decimal("0.01")


def minor_to_decimal_str(amount: int) -> str:
    """1500 -> "15.00"."""
    return str((Decimal(amount) / 100).quantize(_CENTS))


def decimal_to_minor(value: Any) -> int:
    """Convert an external decimal amount to minor units, rounding half-up."""
    try:
        amount = Decimal(str(value))
        if not amount.is_finite():
            raise ValueError(f"Non-finite amount: {value!r}")
        return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def build_invoice_payload(invoice: Invoice) -> dict[str, Any]:
    """External invoice representation; the invoice must have line items loaded."""
    created = invoice.created_at.date() if invoice.created_at else None
    return {
        "doc_number": invoice.display_number,
        "txn_date": created.isoformat() if created else None,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "customer_ref": {
            "value": str(invoice.customer_id) if invoice.customer_id is not None else None,
            "name": invoice.customer_name,
        },
        "lines": [
            {
                "description": line.description,
                "quantity": str(line.quantity),
                "unit_price": minor_to_decimal_str(line.unit_price),
                "amount": minor_to_decimal_str(line.amount),
                "service_type": line.service_type,
            }
            for line in invoice.line_items
        ],
        "subtotal": minor_to_decimal_str(invoice.subtotal),
        "tax": minor_to_decimal_str(invoice.tax),
        "total": minor_to_decimal_str(invoice.total),
        "private_note": f"fieldbill invoice {invoice.id}",
    }


@dataclass
class ExternalPayment:
    """A payment as reported by the accounting system."""

    external_id: str
    amount: int
    occurred_at: datetime
    invoice_external_id: str | None
    method: PaymentMethod
    status: PaymentStatus


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value)
    try:
        if len(text) == 10:
            return datetime.combine(date.fromisoformat(text), time(), tzinfo=UTC)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Invalid timestamp: {value!r}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def linked_invoice_id(raw: dict[str, Any]) -> str | None:
    """External id of the first linked transaction of type Invoice."""
    for txn in raw.get("linked_txns") or []:
        if str(txn.get("txn_type", "")).lower() == "invoice" and txn.get("txn_id"):
            return str(txn["txn_id"])
    return None


def parse_external_payment(raw: dict[str, Any], fallback_time: datetime) -> ExternalPayment:
    """Parse one payment record from the accounting system.

    Raises:
        ValueError: When the record has no id, a bad amount, or an unknown
            status.
    """
    external_id = raw.get("id")
    if not external_id:
        raise ValueError("Payment record has no id")

    method_raw = raw.get("payment_method")
    try:
        method = PaymentMethod.normalize(method_raw) if method_raw else PaymentMethod.UNKNOWN
    except ValueError:
        method = PaymentMethod.UNKNOWN

    return ExternalPayment(
        external_id=str(external_id),
        amount=decimal_to_minor(raw.get("total_amount", "0")),
        occurred_at=(
            _parse_timestamp(raw.get("txn_date"))
            or _parse_timestamp(raw.get("updated_at"))
            or fallback_time
        ),
        invoice_external_id=linked_invoice_id(raw),
        method=method,
        status=PaymentStatus.normalize(raw.get("status") or "SUCCEEDED"),
    )
