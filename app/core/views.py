"""
Core views providing infrastructure endpoints.

This module contains views that are not part of the business domain but are
essential for running the service, such as health checks.
"""

import logging

from django.core.cache import cache
from django.db import DatabaseError, connection
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def _database_connected() -> bool:
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except DatabaseError:
        logger.warning("Health check: database unreachable", exc_info=True)
        return False
    return True


def _cache_connected() -> bool:
    # django-redis is configured with IGNORE_EXCEPTIONS, so a dead Redis
    # shows up as a failed round-trip rather than an exception.
    cache.set("health_check", "ok", timeout=1)
    return cache.get("health_check") == "ok"


def health_check(request):
    """
    Health check endpoint for monitoring and orchestration.

    Returns:
        JsonResponse with status and component health:
        - status: "healthy" or "unhealthy"
        - database: "connected" or "disconnected"
        - cache: "connected" or "disconnected"

    HTTP Status Codes:
        200: Database reachable (cache is reported but not required)
        503: Database unreachable

    Note:
        Redis backs the reconciliation run lock. Without it sweeps cannot
        start, but the API and audit log keep working, so a cache outage
        is reported as degraded rather than unhealthy.
    """
    database_ok = _database_connected()
    cache_ok = _cache_connected()

    health_status = {
        "status": "healthy" if database_ok else "unhealthy",
        "database": "connected" if database_ok else "disconnected",
        "cache": "connected" if cache_ok else "disconnected",
    }
    return JsonResponse(health_status, status=200 if database_ok else 503)
