"""Exceptions raised by the ledger store."""

from typing import Any


class LedgerError(Exception):
    """Base exception for ledger store errors."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.details = details


class NotFoundError(LedgerError):
    """The record does not exist within the requested account."""

    def __init__(self, entity: str, entity_id: Any, account_id: int):
        super().__init__(
            f"{entity} {entity_id} not found for account {account_id}",
            details={"entity": entity, "entity_id": entity_id, "account_id": account_id},
        )
        self.entity = entity
        self.entity_id = entity_id
        self.account_id = account_id


class InvariantViolation(LedgerError):
    """A write would break a ledger invariant (e.g. total != subtotal + tax)."""

    pass
