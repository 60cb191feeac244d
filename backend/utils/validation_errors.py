"""
Structured Error Responses

Turns domain exceptions and parameter problems into HTTPException bodies
the dashboard can tell apart from connectivity failures.

Error Response Format:
{
    "error": "missing_parameter" | "invalid_parameter" | "validation_error"
             | "not_found" | "invalid_state" | "data_access" | "timeout",
    "parameter": "account_id",
    "message": "account_id is required"
}
"""

import uuid
from typing import Any, NoReturn, Optional

from fastapi import HTTPException, status

from utils.errors import (
    DataAccessError,
    InvalidStateError,
    InvoicingError,
    NotFoundError,
    ReconciliationTimeoutError,
    ValidationError,
)


class ValidationErrorResponse:
    """Structured error response builder."""

    @staticmethod
    def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
        return {
            "error": "missing_parameter",
            "parameter": parameter,
            "message": message or f"{parameter} is required"
        }

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        """
        Args:
            parameter: Name of the invalid parameter
            message: Description of the validation error
            value: The invalid value, truncated before it is echoed back
        """
        response = {
            "error": "invalid_parameter",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]
        return response

    @staticmethod
    def validation_error(message: str, details: Optional[dict] = None, parameter: Optional[str] = None) -> dict:
        response = {
            "error": "validation_error",
            "parameter": parameter,
            "message": message
        }
        if details:
            response["details"] = details
        return response

    @staticmethod
    def domain_error(code: str, exc: InvoicingError) -> dict:
        response = {
            "error": code,
            "parameter": None,
            "message": exc.message
        }
        if exc.details:
            response["details"] = exc.details
        return response


def raise_missing_parameter(parameter: str, message: Optional[str] = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.missing_parameter(parameter, message)
    )


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.invalid_parameter(parameter, message, value)
    )


def raise_for_domain_error(exc: InvoicingError) -> NoReturn:
    """
    Map a domain exception onto the matching HTTP status.

    - ValidationError -> 422
    - NotFoundError -> 404
    - InvalidStateError -> 409
    - ReconciliationTimeoutError -> 504
    - DataAccessError -> 503
    """
    if isinstance(exc, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=ValidationErrorResponse.validation_error(exc.message, exc.details, exc.field)
        )
    if isinstance(exc, NotFoundError):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=ValidationErrorResponse.domain_error("not_found", exc)
        )
    if isinstance(exc, InvalidStateError):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=ValidationErrorResponse.domain_error("invalid_state", exc)
        )
    if isinstance(exc, ReconciliationTimeoutError):
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=ValidationErrorResponse.domain_error("timeout", exc)
        )
    if isinstance(exc, DataAccessError):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=ValidationErrorResponse.domain_error("data_access", exc)
        )
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=ValidationErrorResponse.domain_error("internal_error", exc)
    )


def validate_required_uuid(value: Optional[str], parameter: str) -> str:
    """
    Validate that a required UUID parameter is present and well formed.

    Raises:
        HTTPException with structured error if validation fails
    """
    if not value:
        raise_missing_parameter(parameter)

    try:
        uuid.UUID(value)
    except ValueError:
        raise_invalid_parameter(
            parameter,
            f"{parameter} must be a valid UUID format",
            value
        )
    return value
