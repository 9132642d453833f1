"""Error code registry with E-XXXX format codes.

This module defines the error code system for shiprate, organizing errors
into categories:
- E-2xxx: Submission validation errors
- E-3xxx: Carrier API errors
- E-4xxx: System/storage errors
- E-5xxx: Authentication errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    VALIDATION = "validation"  # E-2xxx
    CARRIER = "carrier"  # E-3xxx
    SYSTEM = "system"  # E-4xxx
    AUTH = "auth"  # E-5xxx


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Validation errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Malformed Submission",
        message_template="Job submission is invalid: {reason}",
        remediation="Correct the request body and resubmit.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Unknown Carrier Account",
        message_template="Carrier account(s) not found or inactive: {account_ids}",
        remediation="Submit only active carrier accounts you own.",
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.VALIDATION,
        title="Duplicate Shipment Id",
        message_template="Shipment id '{shipment_id}' appears more than once.",
        remediation="Give every shipment in a submission a unique id.",
    ),
    # Carrier errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.CARRIER,
        title="Carrier Unavailable",
        message_template="Carrier {carrier} did not respond successfully: {reason}",
        remediation="Transient carrier problem. The rate is retried automatically.",
        is_retryable=True,
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.CARRIER,
        title="No Rate Available",
        message_template="Carrier {carrier} has no rate for service {service_code}.",
        remediation="The lane, weight or service is not offered by this carrier.",
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.CARRIER,
        title="Unreadable Carrier Response",
        message_template="Carrier {carrier} returned an unusable response for service {service_code}: {reason}",
        remediation="No action needed. The service is skipped for this shipment.",
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Storage Unavailable",
        message_template="Shipment results could not be saved: {reason}",
        remediation="Check database availability and re-run the analysis.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Carrier Configuration Load Failed",
        message_template="Carrier accounts could not be loaded: {reason}",
        remediation="Verify the carrier accounts still exist and re-run the analysis.",
    ),
    "E-4003": ErrorCode(
        code="E-4003",
        category=ErrorCategory.SYSTEM,
        title="Analysis Interrupted",
        message_template="Analysis stopped before completion: {reason}",
        remediation="Re-run the analysis.",
    ),
    "E-4004": ErrorCode(
        code="E-4004",
        category=ErrorCategory.SYSTEM,
        title="Unexpected Pipeline Error",
        message_template="Analysis failed unexpectedly: {reason}",
        remediation="Check server logs and re-run the analysis.",
    ),
    "E-4005": ErrorCode(
        code="E-4005",
        category=ErrorCategory.SYSTEM,
        title="Invalid Configuration",
        message_template="Configuration file {path} is invalid: {reason}",
        remediation="Fix the YAML file or the SHIPRATE_* environment overrides.",
    ),
    # Auth errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.AUTH,
        title="Carrier Authentication Failed",
        message_template="Carrier {carrier} rejected credentials for account {account_id}: {reason}",
        remediation="Check the client id and secret configured for this carrier account.",
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.AUTH,
        title="Carrier Credentials Missing",
        message_template="No credentials configured for carrier account {account_id}.",
        remediation="Set <REF>_CLIENT_ID and <REF>_CLIENT_SECRET for the account's credentials_ref.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all error codes in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
