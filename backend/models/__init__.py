from .schemas import (
    LineItem, LineItemCreate, Invoice, BankTransaction, Client,
    RecurringInvoiceTemplate, RecurringTemplateCreate, StateTransitionRequest,
    StateHistoryEntry, GeneratedInvoiceResult, HealthScore,
    RecurringRule, AlwaysCondition, MonthInCondition,
    AppendNoteAction, ApplyDiscountAction, SkipAction,
)
from .enums import (
    InvoiceStatus, BankTransactionStatus, RecurringFrequency,
    RecurringState, HealthLabel, OPEN_INVOICE_STATUSES,
)

__all__ = [
    'LineItem', 'LineItemCreate', 'Invoice', 'BankTransaction', 'Client',
    'RecurringInvoiceTemplate', 'RecurringTemplateCreate', 'StateTransitionRequest',
    'StateHistoryEntry', 'GeneratedInvoiceResult', 'HealthScore',
    'RecurringRule', 'AlwaysCondition', 'MonthInCondition',
    'AppendNoteAction', 'ApplyDiscountAction', 'SkipAction',
    'InvoiceStatus', 'BankTransactionStatus', 'RecurringFrequency',
    'RecurringState', 'HealthLabel', 'OPEN_INVOICE_STATUSES',
]
