"""
Invoicing Core - Database Models

Maps the hosted store's tables. Table and column names are the store's
contract and must not change; Python attribute names differ where the
column name is ambiguous (the tenant column ``user_id`` is exposed as
``account_id``, the bank account column ``account_id`` as ``bank_account_id``).

Tables:
- clients: Client records with cached health score
- invoices / invoice_items: Issued invoices and their lines
- bank_transactions: Imported bank feed rows awaiting reconciliation
- recurring_invoices / recurring_invoice_items: Recurring templates
- recurring_invoice_history: State transition trail for templates
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Integer, Boolean, Date, DateTime,
    ForeignKey, Numeric, JSON, Enum as SQLEnum
)
from database.connection import Base
from models.enums import InvoiceStatus, RecurringFrequency, RecurringState


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ClientDB(Base):
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column("user_id", String(36), nullable=False, index=True)
    name = Column(Text, nullable=False)
    email = Column(Text, nullable=True)
    company = Column(Text, nullable=True)
    health_score = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class InvoiceDB(Base):
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column("user_id", String(36), nullable=False, index=True)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    number = Column(Text, nullable=False)
    status = Column(
        SQLEnum(InvoiceStatus, name="invoice_status"),
        nullable=False,
        default=InvoiceStatus.draft,
        index=True
    )
    issue_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class InvoiceItemDB(Base):
    __tablename__ = "invoice_items"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(Text, nullable=False)
    quantity = Column(Numeric(12, 2), nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)
    amount = Column(Numeric(12, 2), nullable=True)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class BankTransactionDB(Base):
    __tablename__ = "bank_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column("user_id", String(36), nullable=False, index=True)
    bank_account_id = Column("account_id", String(36), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    balance = Column(Numeric(12, 2), nullable=True)
    date = Column(Date, nullable=False, index=True)
    description = Column(Text, nullable=True)
    # Free text in the store; values follow BankTransactionStatus
    status = Column(Text, nullable=True, default="pending", index=True)
    matched_invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class RecurringInvoiceDB(Base):
    __tablename__ = "recurring_invoices"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column("user_id", String(36), nullable=False, index=True)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    template_number = Column(Text, nullable=False)
    frequency = Column(SQLEnum(RecurringFrequency, name="recurring_frequency"), nullable=False)
    next_due_date = Column(Date, nullable=False)
    last_generated_date = Column(Date, nullable=True)
    state = Column(
        SQLEnum(RecurringState, name="recurring_state"),
        nullable=True,
        default=RecurringState.draft
    )
    last_state_change_at = Column(DateTime(timezone=True), nullable=True)
    # Kept in step with state for consumers that still read it
    is_active = Column(Boolean, nullable=False, default=False)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    rules = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class RecurringInvoiceItemDB(Base):
    __tablename__ = "recurring_invoice_items"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    recurring_invoice_id = Column(
        String(36),
        ForeignKey("recurring_invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    description = Column(Text, nullable=False)
    quantity = Column(Numeric(12, 2), nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)
    amount = Column(Numeric(12, 2), nullable=True)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class RecurringInvoiceHistoryDB(Base):
    """Immutable trail of template state changes."""
    __tablename__ = "recurring_invoice_history"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    recurring_invoice_id = Column(
        String(36),
        ForeignKey("recurring_invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    old_state = Column(SQLEnum(RecurringState, name="recurring_state"), nullable=True)
    new_state = Column(SQLEnum(RecurringState, name="recurring_state"), nullable=True)
    changed_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    changed_by = Column(String(36), nullable=True)
