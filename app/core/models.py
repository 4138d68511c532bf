"""
Core abstract models shared by all domain apps.

Base Classes:
    BaseModel: Abstract model with timestamps (created_at, updated_at)
    UUIDPrimaryKeyMixin: Use a UUID v4 primary key

Usage:
    from core.models import BaseModel, UUIDPrimaryKeyMixin

    class Pledge(UUIDPrimaryKeyMixin, BaseModel):
        amount = models.DecimalField(max_digits=10, decimal_places=2)

Note:
    Always list mixins before BaseModel in inheritance.
"""

from __future__ import annotations

import uuid

from django.db import models


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    Pledge and audit identifiers are exposed in API responses and operator
    tooling, so they must not reveal record counts or ordering.

    Fields:
        id: UUIDField as primary key (auto-generated)
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier (UUID v4)",
    )

    class Meta:
        abstract = True


class BaseModel(models.Model):
    """
    Abstract base model providing common fields for all models.

    Fields:
        created_at: Automatically set when the object is first created
        updated_at: Automatically updated whenever the object is saved

    Note:
        Subclasses may redeclare created_at when the creation time is
        business data rather than a bookkeeping timestamp.
    """

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,  # Index for efficient time-based queries
        help_text="Timestamp when this record was created",
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="Timestamp when this record was last modified",
    )

    class Meta:
        abstract = True
        ordering = ["-created_at"]

    def __str__(self) -> str:
        """Default string representation using primary key."""
        return f"{self.__class__.__name__}(id={self.pk})"
