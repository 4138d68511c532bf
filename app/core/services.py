"""
Service layer base classes.

- ServiceResult: Success/failure wrapper for outcomes a caller is expected
  to branch on (a sweep already running, a claim already taken)
- BaseService: Class-level logger and transaction helper

Unexpected failures (database errors, bugs) are raised, not wrapped.

Usage:
    from core.services import BaseService, ServiceResult

    class ReconciliationService(BaseService):
        @classmethod
        def trigger_sweep(cls, **kwargs) -> ServiceResult[SweepSummary]:
            try:
                summary = cls.run_sweep(**kwargs)
            except ReconciliationLockError as e:
                return ServiceResult.failure(e.message, error_code=e.error_code)
            return ServiceResult.success(summary)

    # In a view
    result = ReconciliationService.trigger_sweep(limit=100)
    if not result:
        return Response(result.to_response(), status=409)
    return Response(result.data.to_dict())
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Outcome of a service call.

    Attributes:
        success: Whether the call did what was asked
        data: Payload on success
        error: Human-readable reason on failure
        error_code: Machine-readable reason on failure
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str, error_code: str | None = None) -> ServiceResult[T]:
        return cls(success=False, error=error, error_code=error_code)

    def to_response(self) -> dict[str, Any]:
        """Body for an API response."""
        if self.success:
            return {"success": True, "data": self.data}

        response: dict[str, Any] = {"success": False, "error": self.error}
        if self.error_code:
            response["error_code"] = self.error_code
        return response

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for stateless services.

    Services expose classmethods only. Collaborators that tests replace
    (the Stripe adapter, the receipt sender) are class attributes with a
    setter.
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Logger named <module>.<ServiceClass>."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """Run the block in one database transaction."""
        with transaction.atomic():
            yield
