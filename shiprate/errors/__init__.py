"""Error handling framework for shiprate.

This package provides:
- Error code registry with E-XXXX format codes
- The RateShopError application error and its formatter
- Typed domain exceptions mapped to HTTP status codes

Error categories:
- E-2xxx: Submission validation errors
- E-3xxx: Carrier API errors
- E-4xxx: System/storage errors
- E-5xxx: Authentication errors
"""

from shiprate.errors.domain import DomainError, NotFoundError, ValidationError
from shiprate.errors.formatter import RateShopError, format_error
from shiprate.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Formatter
    "RateShopError",
    "format_error",
    # Domain
    "DomainError",
    "NotFoundError",
    "ValidationError",
]
