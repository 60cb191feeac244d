from enum import Enum


class InvoiceStatus(str, Enum):
    draft = "draft"
    sent = "sent"
    paid = "paid"
    overdue = "overdue"
    void = "void"


class BankTransactionStatus(str, Enum):
    pending = "pending"
    matched = "matched"
    unmatched = "unmatched"


class RecurringFrequency(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    annually = "annually"


class RecurringState(str, Enum):
    draft = "draft"
    active = "active"
    paused = "paused"
    canceled = "canceled"


class HealthLabel(str, Enum):
    excellent = "excellent"
    good = "good"
    fair = "fair"
    poor = "poor"
    critical = "critical"


# Invoices the reconciliation matcher is allowed to settle
OPEN_INVOICE_STATUSES = (InvoiceStatus.sent, InvoiceStatus.overdue)
