"""
Utils Package

- errors: domain exceptions raised by the invoicing core
- validation_errors: structured HTTP error bodies
"""

from .errors import (
    InvoicingError,
    DataAccessError,
    InvalidStateError,
    ValidationError,
    NotFoundError,
    ReconciliationTimeoutError,
)

__all__ = [
    'InvoicingError',
    'DataAccessError',
    'InvalidStateError',
    'ValidationError',
    'NotFoundError',
    'ReconciliationTimeoutError',
]
