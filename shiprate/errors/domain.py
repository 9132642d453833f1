"""Typed domain exceptions for API error mapping.

Routes catch these to return the matching HTTP status code.

Usage:
    # In service layer
    raise NotFoundError("Job", job_id)

    # In route handler
    try:
        job = service.get_status(job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ValidationError(DomainError):
    """Malformed job submission, rejected before a job exists. Maps to HTTP 400.

    Attributes:
        code: Registry code (E-2xxx) describing the failure.
        details: Structured context for the response body.
    """

    def __init__(self, message: str, code: str = "E-2001", details: dict | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
