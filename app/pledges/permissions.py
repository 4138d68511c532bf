"""
Permission classes for the reconciliation API.

- IsReconciliationOperator: the scheduler (cron secret) or a staff user
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rest_framework import permissions

from pledges.authentication import CRON_AUTH

if TYPE_CHECKING:
    from rest_framework.request import Request
    from rest_framework.views import APIView


def is_scheduler_request(request: Request) -> bool:
    return request.auth == CRON_AUTH


class IsReconciliationOperator(permissions.BasePermission):
    """Allows the scheduler and administrators to trigger sweeps."""

    message = "Administrator access required."

    def has_permission(self, request: Request, view: APIView) -> bool:
        if is_scheduler_request(request):
            return True
        user = request.user
        return bool(
            user
            and user.is_authenticated
            and (user.is_staff or user.is_superuser)
        )
