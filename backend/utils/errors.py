"""
Domain Exceptions

Raised by the invoicing core services and mapped to HTTP responses by
utils.validation_errors.raise_for_domain_error.
"""

from typing import Any, Dict, Optional


class InvoicingError(Exception):
    """Base class for invoicing core errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class DataAccessError(InvoicingError):
    """The data store could not be read or written."""


class InvalidStateError(InvoicingError):
    """Operation not allowed in the record's current state."""

    def __init__(self, message: str, current_state: Optional[str] = None, requested: Optional[str] = None):
        details = {}
        if current_state is not None:
            details["current_state"] = current_state
        if requested is not None:
            details["requested"] = requested
        super().__init__(message, details)
        self.current_state = current_state
        self.requested = requested


class ValidationError(InvoicingError):
    """Input or stored payload failed validation."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.field = field


class NotFoundError(InvoicingError):
    """Record does not exist within the caller's account."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} {resource_id} not found", {"resource": resource, "id": resource_id})
        self.resource = resource
        self.resource_id = resource_id


class ReconciliationTimeoutError(InvoicingError):
    """A reconciliation run exceeded its time budget."""
