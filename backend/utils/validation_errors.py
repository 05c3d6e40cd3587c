"""
Structured Validation Error Utilities

Standardized error bodies for request validation failures, so API clients
can tell a bad parameter apart from a missing record or a server fault.

Error Response Format:
{
    "error": "missing_parameter" | "invalid_parameter" | "validation_error",
    "parameter": "X-Organization-Id",
    "message": "X-Organization-Id is required"
}
"""

import uuid
from typing import Any, Optional

from fastapi import HTTPException, status


class ValidationErrorResponse:
    """Structured validation error response builder."""

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
            parameter: Name of the invalid parameter (request field alias)
            message: Description of the validation error
            value: The rejected value, echoed back truncated
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
    def validation_error(message: str, details: Optional[dict] = None) -> dict:
        response = {
            "error": "validation_error",
            "parameter": None,
            "message": message
        }
        if details:
            response["details"] = details
        return response


def raise_missing_parameter(parameter: str, message: Optional[str] = None):
    """Raise a 422 with a missing_parameter body."""
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.missing_parameter(parameter, message)
    )


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None):
    """Raise a 422 with an invalid_parameter body."""
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.invalid_parameter(parameter, message, value)
    )


def validate_required_uuid(value: Optional[str], parameter: str) -> str:
    """
    Ensure a required identifier (path id, organization header) is a UUID.

    Raises:
        HTTPException 422 with a structured body
    """
    if not value:
        raise_missing_parameter(parameter)

    try:
        uuid.UUID(value)
    except ValueError:
        raise_invalid_parameter(parameter, f"{parameter} must be a valid UUID format", value)
    return value


def validate_optional_uuid(value: Optional[str], parameter: str) -> Optional[str]:
    """Like validate_required_uuid, but an absent value yields None."""
    if not value:
        return None
    return validate_required_uuid(value, parameter)
