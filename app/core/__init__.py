"""
Core Application - Infrastructure & Base Classes

Generic building blocks shared by domain apps. No pledge logic lives here.

Models (import from core.models):
    - BaseModel: Abstract model with timestamps (created_at, updated_at)
    - UUIDPrimaryKeyMixin: UUID as primary key

Services (import from core.services):
    - BaseService: Base class for service layer
    - ServiceResult: Standard result wrapper for success/failure handling

Exceptions (import from core.exceptions):
    - BaseApplicationError: Base exception with error codes
    - NotFoundError: Resource not found
    - ConflictError: State conflicts (stale versions, held locks)
    - ExternalServiceError: Third-party service failures

Views (import from core.views):
    - health_check: Database and cache health endpoint

Usage:
    from core.models import BaseModel, UUIDPrimaryKeyMixin
    from core.services import BaseService, ServiceResult
    from core.exceptions import ConflictError, NotFoundError

Note:
    Models are NOT imported here to avoid AppRegistryNotReady errors.
    Import them directly from core.models.
"""

# Services (no Django model dependencies)
from .services import BaseService, ServiceResult

# Exceptions (no Django dependencies)
from .exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
)

__all__ = [
    # Services
    "BaseService",
    "ServiceResult",
    # Exceptions
    "BaseApplicationError",
    "NotFoundError",
    "ConflictError",
    "ExternalServiceError",
]
