from .connection import get_db, get_engine, get_session_factory, init_db, Base

# Import models so they are registered with Base
from .models import (
    ClientDB,
    InvoiceDB,
    InvoiceItemDB,
    BankTransactionDB,
    RecurringInvoiceDB,
    RecurringInvoiceItemDB,
    RecurringInvoiceHistoryDB,
)

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'init_db', 'Base',
    'ClientDB', 'InvoiceDB', 'InvoiceItemDB', 'BankTransactionDB',
    'RecurringInvoiceDB', 'RecurringInvoiceItemDB', 'RecurringInvoiceHistoryDB',
]
