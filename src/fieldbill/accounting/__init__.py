"""External accounting system integration."""

from fieldbill.accounting.client import (
    AccountingAPIClient,
    AccountingAPIError,
    AuthenticationError,
    RateLimitError,
    TokenSet,
)
from fieldbill.accounting.mapping import (
    ExternalPayment,
    build_invoice_payload,
    decimal_to_minor,
    minor_to_decimal_str,
    parse_external_payment,
)

__all__ = [
    "AccountingAPIClient",
    "AccountingAPIError",
    "AuthenticationError",
    "ExternalPayment",
    "RateLimitError",
    "TokenSet",
    "build_invoice_payload",
    "decimal_to_minor",
    "minor_to_decimal_str",
    "parse_external_payment",
]
