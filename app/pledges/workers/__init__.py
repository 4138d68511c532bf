"""
Celery tasks for pledge reconciliation.

Usage:
    from pledges.workers import run_scheduled_sweep

    run_scheduled_sweep.delay()
"""

from pledges.workers.reconciliation_worker import (
    retry_failed_receipts,
    run_scheduled_sweep,
)

__all__ = [
    "retry_failed_receipts",
    "run_scheduled_sweep",
]
