"""Pytest configuration and fixtures."""

import os
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("ACCOUNTING_CLIENT_ID", "test-client")
os.environ.setdefault("ACCOUNTING_CLIENT_SECRET", "test-secret")
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")

from fieldbill.ledger import (  # noqa: E402
    AccountIntegration,
    BillingProfile,
    Invoice,
    InvoiceStatus,
    Job,
    JobStatus,
    LedgerStore,
    LineItem,
    Payment,
    PaymentStatus,
    build_engine,
    build_session_factory,
    create_tables,
    session_scope,
)
from fieldbill.suggestions import SuggestedLineItem, Suggestion, SuggestionContext  # noqa: E402

ACCOUNT_ID = 1
OTHER_ACCOUNT_ID = 2
NOW = datetime(2024, 6, 30, 12, 0, tzinfo=UTC)


@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite ledger per test."""
    engine = build_engine("sqlite://")
    create_tables(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return LedgerStore(session_factory)


@pytest.fixture
def seed(session_factory):
    """Helpers that insert rows directly, bypassing store rules."""
    return LedgerSeeder(session_factory)


class LedgerSeeder:
    def __init__(self, factory):
        self._factory = factory

    def job(
        self,
        job_id: int,
        account_id: int = ACCOUNT_ID,
        status: JobStatus = JobStatus.COMPLETED,
        service_type: str = "mowing",
        **fields: Any,
    ) -> Job:
        with session_scope(self._factory) as session:
            job = Job(
                id=job_id,
                account_id=account_id,
                status=status,
                service_type=service_type,
                customer_id=fields.pop("customer_id", 501),
                customer_name=fields.pop("customer_name", "Pat Rivera"),
                description=fields.pop("description", "Front and back lawn"),
                **fields,
            )
            session.add(job)
        return job

    def profile(self, account_id: int = ACCOUNT_ID, **fields: Any) -> BillingProfile:
        fields.setdefault("business_name", "Green Acres Lawn Care")
        with session_scope(self._factory) as session:
            profile = BillingProfile(account_id=account_id, **fields)
            session.add(profile)
        return profile

    def invoice(
        self,
        total: int,
        tax: int = 0,
        account_id: int = ACCOUNT_ID,
        status: InvoiceStatus = InvoiceStatus.SENT,
        due_date: date | None = None,
        external_id: str | None = None,
        job_id: int | None = None,
        paid_at: datetime | None = None,
    ) -> Invoice:
        subtotal = total - tax
        with session_scope(self._factory) as session:
            invoice = Invoice(
                account_id=account_id,
                job_id=job_id,
                customer_id=501,
                customer_name="Pat Rivera",
                subtotal=subtotal,
                tax=tax,
                total=total,
                status=status,
                due_date=due_date,
                external_id=external_id,
                paid_at=paid_at,
                line_items=[
                    LineItem(
                        description="Lawn mowing",
                        quantity=Decimal("1"),
                        unit_price=subtotal,
                        amount=subtotal,
                        service_type="mowing",
                    )
                ],
            )
            session.add(invoice)
            session.flush()
            invoice.invoice_number = f"INV-{invoice.id:05d}"
        return invoice

    def payment(
        self,
        invoice_id: int | None,
        amount: int,
        account_id: int = ACCOUNT_ID,
        status: PaymentStatus = PaymentStatus.SUCCEEDED,
        external_id: str | None = None,
        occurred_at: datetime = NOW,
    ) -> Payment:
        with session_scope(self._factory) as session:
            payment = Payment(
                account_id=account_id,
                invoice_id=invoice_id,
                amount=amount,
                status=status,
                external_id=external_id,
                occurred_at=occurred_at,
            )
            session.add(payment)
        return payment

    def integration(
        self,
        account_id: int = ACCOUNT_ID,
        provider: str = "quickbooks",
        **fields: Any,
    ) -> AccountIntegration:
        fields.setdefault("access_token", "access-token-123")
        fields.setdefault("refresh_token", "refresh-token-123")
        fields.setdefault("external_realm_id", "realm-9")
        with session_scope(self._factory) as session:
            integration = AccountIntegration(account_id=account_id, provider=provider, **fields)
            session.add(integration)
        return integration


class FakeSuggester:
    """Scripted content suggester that records every context it sees."""

    def __init__(self, suggestion: Suggestion | None = None, error: Exception | None = None):
        self.suggestion = suggestion
        self.error = error
        self.contexts: list[SuggestionContext] = []

    async def suggest(self, context: SuggestionContext) -> Suggestion:
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        assert self.suggestion is not None
        return self.suggestion


def make_suggestion(*lines: tuple[str, str, int], confidence: float = 0.95) -> Suggestion:
    return Suggestion(
        line_items=[
            SuggestedLineItem(description=desc, quantity=Decimal(qty), unit_price=price)
            for desc, qty, price in lines
        ],
        confidence=confidence,
        reasoning="Priced from the account rate card",
    )


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx AsyncClient."""
    client = AsyncMock()
    client.request = AsyncMock()
    client.post = AsyncMock()
    client.get = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def mock_token_response():
    """Mock token refresh response."""
    return {
        "access_token": "new-access-token",
        "refresh_token": "new-refresh-token",
        "expires_in": 3600,
    }


@pytest.fixture
def external_payments():
    """Payments as returned by the accounting system."""
    return [
        {
            "id": "pay-1",
            "total_amount": "100.00",
            "txn_date": "2024-06-20",
            "payment_method": "Credit Card",
            "status": "completed",
            "linked_txns": [
                {"txn_id": "cust-7", "txn_type": "Customer"},
                {"txn_id": "ext-inv-1", "txn_type": "Invoice"},
            ],
        },
        {
            "id": "pay-2",
            "total_amount": "25.50",
            "txn_date": "2024-06-21",
            "status": "completed",
            "linked_txns": [],
        },
        # Same record delivered twice in one batch
        {
            "id": "pay-1",
            "total_amount": "100.00",
            "txn_date": "2024-06-20",
            "status": "completed",
            "linked_txns": [{"txn_id": "ext-inv-1", "txn_type": "Invoice"}],
        },
    ]
