"""Shared service-layer error types.

Carrier failures are split by how the pipeline reacts to them:

- AuthError: credentials are wrong for the whole account. Never retried;
  the account is skipped for the rest of the job.
- TransientError: timeout, 5xx or 429. Retried a bounded number of times.
- RateNotFoundError: the carrier has no rate for the lane/weight/service.
  Terminal for that candidate.
- CarrierResponseError: non-2xx or malformed body for one service code.
  Logged and skipped.

StorageError and CarrierConfigError are job-level: they are the only
errors that move a job to failed.
"""

from dataclasses import dataclass

from shiprate.errors.registry import get_error


@dataclass
class ServiceError(Exception):
    """Error raised by the rating pipeline.

    Attributes:
        code: shiprate error code (E-XXXX format)
        message: Human-readable error message
        remediation: Suggested fix
        details: Raw error details
    """

    code: str
    message: str
    remediation: str = ""
    details: dict | None = None

    def __str__(self) -> str:
        """Return formatted error message."""
        return f"[{self.code}] {self.message}"

    @classmethod
    def from_code(cls, code: str, details: dict | None = None, **context: object):
        """Build the error from its registry entry.

        Args:
            code: Error code in E-XXXX format.
            details: Raw error details to attach.
            **context: Values for the registry message template.

        Returns:
            An instance of the calling class.
        """
        error_def = get_error(code)
        if error_def is None:
            return cls(code=code, message=f"Unknown error: {code}", details=details)
        try:
            message = error_def.message_template.format(**context)
        except KeyError:
            message = error_def.message_template
        return cls(
            code=code,
            message=message,
            remediation=error_def.remediation,
            details=details,
        )


@dataclass
class CarrierError(ServiceError):
    """Error from a carrier rating integration."""


@dataclass
class AuthError(CarrierError):
    """Carrier credentials are missing, invalid or rejected."""


@dataclass
class TransientError(CarrierError):
    """Timeout, 5xx or rate limiting from a carrier; safe to retry."""


@dataclass
class RateNotFoundError(CarrierError):
    """Carrier has no rate for the requested lane, weight or service."""


@dataclass
class CarrierResponseError(CarrierError):
    """Non-2xx or malformed rating response for one service code."""


@dataclass
class StorageError(ServiceError):
    """Durable write of shipment results failed."""


@dataclass
class CarrierConfigError(ServiceError):
    """Carrier accounts or rate tables for a job could not be loaded."""
