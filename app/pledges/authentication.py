"""
Scheduler authentication for the reconciliation trigger.

The external scheduler (cron, Cloud Scheduler, etc.) authenticates with a
shared secret in the X-Cron-Secret header instead of a user token.
Administrators use the regular JWT or session authentication.
"""

from __future__ import annotations

import hmac
import logging

from django.conf import settings
from rest_framework import authentication, exceptions

logger = logging.getLogger(__name__)

CRON_SECRET_HEADER = "HTTP_X_CRON_SECRET"
CRON_AUTH = "cron-secret"


class SchedulerPrincipal:
    """Stand-in user for requests authenticated by the cron secret."""

    is_authenticated = True
    is_anonymous = False
    is_active = True
    is_staff = False
    is_superuser = False
    pk = None
    id = None

    def __str__(self) -> str:
        return "scheduler"


class CronSecretAuthentication(authentication.BaseAuthentication):
    """
    Authenticate the scheduler by the X-Cron-Secret header.

    Returns None when the header is absent so the next authenticator can
    try. A present but wrong secret fails immediately. An empty
    RECONCILIATION_CRON_SECRET disables this credential.
    """

    def authenticate(self, request):
        provided = request.META.get(CRON_SECRET_HEADER)
        if not provided:
            return None

        expected = getattr(settings, "RECONCILIATION_CRON_SECRET", "")
        if not expected or not hmac.compare_digest(
            provided.encode("utf-8"), expected.encode("utf-8")
        ):
            logger.warning(
                "Rejected reconciliation trigger with invalid cron secret",
                extra={"remote_addr": request.META.get("REMOTE_ADDR")},
            )
            raise exceptions.AuthenticationFailed("Invalid cron secret.")

        return SchedulerPrincipal(), CRON_AUTH

    def authenticate_header(self, request) -> str:
        return "X-Cron-Secret"
