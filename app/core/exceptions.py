"""
Application exception hierarchy.

Every domain error carries a human-readable message, a machine-readable
error_code and a details dict. Views serialize them with to_dict(); the
reconciliation audit log records their class name as the error type.

Hierarchy:
    BaseApplicationError
    ├── NotFoundError        - a record expected to exist does not
    ├── ConflictError        - stale versions, held locks, illegal transitions
    └── ExternalServiceError - Stripe or the mail relay failed

Usage:
    from core.exceptions import ConflictError

    raise ConflictError(
        "Pledge changed since it was read",
        error_code="STALE_RECORD",
        details={"pledge_id": str(pledge.id), "expected_version": 3},
    )

Note:
    Authentication and request validation errors are DRF's concern and do
    not use this hierarchy.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Root of all domain errors.

    Subclasses set default_error_code; callers may override it per raise.
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Error body for API responses.

        Example:
            {
                "error": "Another reconciliation sweep is in progress",
                "error_code": "RECONCILIATION_IN_PROGRESS",
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class NotFoundError(BaseApplicationError):
    """A single record looked up by primary key does not exist."""

    default_error_code: str = "NOT_FOUND"


class ConflictError(BaseApplicationError):
    """
    The operation conflicts with the current state of a record.

    Maps to HTTP 409 when surfaced through the API.
    """

    default_error_code: str = "CONFLICT"


class ExternalServiceError(BaseApplicationError):
    """A third-party call (Stripe, SMTP) failed or returned garbage."""

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
