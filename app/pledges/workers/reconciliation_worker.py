"""
Reconciliation worker for scheduled pledge sweeps.

Tasks:
- run_scheduled_sweep: Periodic sweep of pending pledges
- retry_failed_receipts: Resend receipt intents left failed or pending

Usage:
    # Typically called via celery-beat (schedule created by migration
    # 0002_add_reconciliation_schedule)
    from pledges.workers import run_scheduled_sweep

    run_scheduled_sweep.delay(mode="live", limit=200)
"""

from __future__ import annotations

import logging

from celery import shared_task

from pledges.exceptions import ReconciliationLockError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_RECEIPT_RETRY_LIMIT = 100


# =============================================================================
# Periodic Task: Reconciliation Sweep
# =============================================================================


@shared_task(bind=True)
def run_scheduled_sweep(
    self,
    mode: str | None = None,
    limit: int | None = None,
) -> dict:
    """
    Run a reconciliation sweep over pending pledges.

    Args:
        mode: Restrict to "test" or "live" pledges (default: all configured)
        limit: Maximum pledges to consider (default: RECONCILIATION_DEFAULT_LIMIT)

    Returns:
        Dict with:
        - status: "completed", "skipped" (lock held), or "failed"
        - run_id: UUID of the reconciliation run
        - summary: Sweep counters
        - deadline_reached: Whether the time budget ran out
        - error: Error message if failed

    Note:
        If another sweep is in progress the task returns "skipped" rather
        than waiting, so slow sweeps never queue up behind each other.
    """
    from pledges.services import ReconciliationService, SweepFilter
    from pledges.state_machines import SweepTrigger

    logger.info(
        "Starting scheduled reconciliation sweep",
        extra={"mode": mode, "limit": limit, "task_id": self.request.id},
    )

    try:
        summary = ReconciliationService.run_sweep(
            SweepFilter(mode=mode),
            limit,
            trigger=SweepTrigger.SCHEDULED,
        )

    except ReconciliationLockError:
        logger.info(
            "Reconciliation sweep skipped - another sweep in progress",
            extra={"task_id": self.request.id},
        )
        return {
            "status": "skipped",
            "reason": "Another reconciliation sweep is in progress",
        }

    except Exception as e:
        logger.exception(
            f"Unexpected error during reconciliation sweep: {e}",
            extra={"error": str(e)},
        )
        return {
            "status": "failed",
            "error": str(e),
            "error_code": getattr(e, "error_code", "UNEXPECTED_ERROR"),
        }

    return {
        "status": "completed",
        "run_id": str(summary.run_id),
        "summary": summary.counts(),
        "deadline_reached": summary.deadline_reached,
    }


# =============================================================================
# Periodic Task: Receipt Retry
# =============================================================================


@shared_task(bind=True)
def retry_failed_receipts(self, limit: int = DEFAULT_RECEIPT_RETRY_LIMIT) -> dict:
    """
    Resend receipt intents that are failed or still pending.

    Each receipt is claimed before sending, so this task can run alongside
    a sweep without double-sending.

    Returns:
        Dict with status and sent/failed/skipped counts
    """
    from pledges.services import ReceiptService

    try:
        counts = ReceiptService.resend_failed(limit=limit)
    except Exception as e:
        logger.exception(
            f"Unexpected error during receipt retry: {e}",
            extra={"task_id": self.request.id},
        )
        return {"status": "failed", "error": str(e)}

    return {"status": "completed", **counts}


__all__ = [
    "retry_failed_receipts",
    "run_scheduled_sweep",
]
