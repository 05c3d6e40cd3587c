"""
Utils Package

Provides utility modules for:
- validation_errors: Structured 422 bodies for request parameter validation
"""

from .validation_errors import (
    ValidationErrorResponse,
    raise_missing_parameter,
    raise_invalid_parameter,
    validate_required_uuid,
    validate_optional_uuid,
)

__all__ = [
    'ValidationErrorResponse',
    'raise_missing_parameter',
    'raise_invalid_parameter',
    'validate_required_uuid',
    'validate_optional_uuid',
]
