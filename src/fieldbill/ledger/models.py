"""ORM models for the billing ledger.

All monetary columns are integers in minor currency units (cents).
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fieldbill.ledger.db import Base, CanonicalEnum, utcnow
from fieldbill.ledger.enums import (
    IntegrationStatus,
    InvoiceStatus,
    IssueStatus,
    IssueType,
    JobStatus,
    PaymentMethod,
    PaymentStatus,
    Severity,
)


class Job(Base):
    """Read model of a field job, owned by the job-execution service."""

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, index=True)
    status: Mapped[JobStatus] = mapped_column(CanonicalEnum(JobStatus))
    service_type: Mapped[str] = mapped_column(String(64), default="general")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    area_sqft: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    hours: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), nullable=True)
    quoted_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)


class BillingProfile(Base):
    """Per-account pricing configuration."""

    __tablename__ = "billing_profiles"

    account_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_name: Mapped[str] = mapped_column(String(255), default="")
    # service type -> minor units
    base_rates: Mapped[dict[str, int]] = mapped_column(JSON, default=dict)
    area_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    hourly_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    minimum_charge: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tax_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    # basis points: 750 = 7.5%
    tax_rate_bps: Mapped[int] = mapped_column(Integer, default=0)
    payment_terms_days: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("account_id", "job_id", name="uq_invoices_account_job"),
        UniqueConstraint("account_id", "external_id", name="uq_invoices_account_external"),
        CheckConstraint("total = subtotal + tax", name="ck_invoices_total_sum"),
        CheckConstraint("total >= 0", name="ck_invoices_total_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, index=True)
    job_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    customer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    invoice_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    subtotal: Mapped[int] = mapped_column(Integer, default=0)
    tax: Mapped[int] = mapped_column(Integer, default=0)
    total: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[InvoiceStatus] = mapped_column(
        CanonicalEnum(InvoiceStatus), default=InvoiceStatus.DRAFT
    )
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    line_items: Mapped[list["LineItem"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="LineItem.id",
    )

    @property
    def display_number(self) -> str:
        return self.invoice_number or str(self.id)


class LineItem(Base):
    __tablename__ = "line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), index=True)
    description: Mapped[str] = mapped_column(String(500))
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3))
    unit_price: Mapped[int] = mapped_column(Integer)
    amount: Mapped[int] = mapped_column(Integer)
    service_type: Mapped[str | None] = mapped_column(String(64), nullable=True)

    invoice: Mapped[Invoice] = relationship(back_populates="line_items")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("account_id", "external_id", name="uq_payments_account_external"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, index=True)
    invoice_id: Mapped[int | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True, index=True
    )
    amount: Mapped[int] = mapped_column(Integer)
    method: Mapped[PaymentMethod] = mapped_column(
        CanonicalEnum(PaymentMethod), default=PaymentMethod.UNKNOWN
    )
    status: Mapped[PaymentStatus] = mapped_column(
        CanonicalEnum(PaymentStatus), default=PaymentStatus.SUCCEEDED
    )
    occurred_at: Mapped[datetime] = mapped_column(default=utcnow)
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class BillingIssue(Base):
    __tablename__ = "billing_issues"
    __table_args__ = (
        # At most one open issue per (invoice, type, summary)
        Index(
            "uq_billing_issues_open_key",
            "account_id",
            "invoice_id",
            "type",
            "summary",
            unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, index=True)
    invoice_id: Mapped[int | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True, index=True
    )
    type: Mapped[IssueType] = mapped_column(CanonicalEnum(IssueType))
    severity: Mapped[Severity] = mapped_column(CanonicalEnum(Severity))
    status: Mapped[IssueStatus] = mapped_column(
        CanonicalEnum(IssueStatus), default=IssueStatus.OPEN
    )
    summary: Mapped[str] = mapped_column(String(500))
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class AccountIntegration(Base):
    __tablename__ = "account_integrations"
    __table_args__ = (
        UniqueConstraint("account_id", "provider", name="uq_integrations_account_provider"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, index=True)
    provider: Mapped[str] = mapped_column(String(32))
    external_realm_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(nullable=True)
    status: Mapped[IntegrationStatus] = mapped_column(
        CanonicalEnum(IntegrationStatus), default=IntegrationStatus.CONNECTED
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, index=True)
    action: Mapped[str] = mapped_column(String(64))
    entity_type: Mapped[str] = mapped_column(String(32))
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
