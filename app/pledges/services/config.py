"""
Reconciliation tuning knobs.

ReconciliationConfig is read from Django settings once per sweep and passed
explicitly to the resolver, the transition rules and the orchestrator, so
tests can build one directly instead of overriding settings.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from django.conf import settings

DEFAULT_GRACE_WINDOW_SECONDS = 300
DEFAULT_STALE_THRESHOLD_SECONDS = 7200
DEFAULT_SEARCH_WINDOW_SECONDS = 3600
DEFAULT_AMOUNT_TOLERANCE = "1.00"
DEFAULT_LIMIT = 500
DEFAULT_MAX_LIMIT = 1000


@dataclass(frozen=True)
class ReconciliationConfig:
    """
    Thresholds and limits for a reconciliation sweep.

    Attributes:
        grace_window: Pledges younger than this are left to the webhook
        stale_threshold: Pending pledges older than this with no processor
            record are auto-cancelled
        search_window: Half-width of the customer search window around
            the pledge creation time
        amount_tolerance: Allowed difference between pledged and charged
            amount when matching by customer search
        default_limit: Candidates per sweep when the caller gives no limit
        max_limit: Upper bound on the caller-supplied limit
        max_workers: Pledges reconciled concurrently (1 = sequential)
        time_budget_seconds: Wall-clock budget per sweep (0 = unbounded)
        notify_on_auto_cancel: Send the payer a notice on auto-cancel
    """

    grace_window: timedelta = timedelta(seconds=DEFAULT_GRACE_WINDOW_SECONDS)
    stale_threshold: timedelta = timedelta(seconds=DEFAULT_STALE_THRESHOLD_SECONDS)
    search_window: timedelta = timedelta(seconds=DEFAULT_SEARCH_WINDOW_SECONDS)
    amount_tolerance: Decimal = Decimal(DEFAULT_AMOUNT_TOLERANCE)
    default_limit: int = DEFAULT_LIMIT
    max_limit: int = DEFAULT_MAX_LIMIT
    max_workers: int = 1
    time_budget_seconds: float = 0
    notify_on_auto_cancel: bool = False

    @classmethod
    def from_settings(cls) -> ReconciliationConfig:
        return cls(
            grace_window=timedelta(
                seconds=getattr(
                    settings,
                    "RECONCILIATION_GRACE_WINDOW_SECONDS",
                    DEFAULT_GRACE_WINDOW_SECONDS,
                )
            ),
            stale_threshold=timedelta(
                seconds=getattr(
                    settings,
                    "RECONCILIATION_STALE_THRESHOLD_SECONDS",
                    DEFAULT_STALE_THRESHOLD_SECONDS,
                )
            ),
            search_window=timedelta(
                seconds=getattr(
                    settings,
                    "RECONCILIATION_SEARCH_WINDOW_SECONDS",
                    DEFAULT_SEARCH_WINDOW_SECONDS,
                )
            ),
            amount_tolerance=Decimal(
                str(
                    getattr(
                        settings,
                        "RECONCILIATION_AMOUNT_TOLERANCE",
                        DEFAULT_AMOUNT_TOLERANCE,
                    )
                )
            ),
            default_limit=getattr(settings, "RECONCILIATION_DEFAULT_LIMIT", DEFAULT_LIMIT),
            max_limit=getattr(settings, "RECONCILIATION_MAX_LIMIT", DEFAULT_MAX_LIMIT),
            max_workers=max(1, getattr(settings, "RECONCILIATION_MAX_WORKERS", 1)),
            time_budget_seconds=getattr(settings, "RECONCILIATION_TIME_BUDGET_SECONDS", 0),
            notify_on_auto_cancel=getattr(
                settings, "RECONCILIATION_NOTIFY_ON_AUTO_CANCEL", False
            ),
        )
