"""
Tests for reconciliation worker tasks.

This module tests the Celery tasks that run scheduled sweeps and retry
receipt delivery.
"""

from __future__ import annotations

from unittest.mock import patch

from django.utils import timezone

from pledges.adapters import OBJECT_CHECKOUT_SESSION, ProcessorObject
from pledges.exceptions import ReconciliationError, ReconciliationLockError
from pledges.models import ReconciliationRun
from pledges.services import SweepFilter, SweepSummary
from pledges.state_machines import (
    PledgeStatus,
    ProcessorMode,
    ReceiptStatus,
    SweepTrigger,
)
from pledges.tests.factories import PledgeReceiptFactory
from pledges.workers.reconciliation_worker import (
    retry_failed_receipts,
    run_scheduled_sweep,
)


# =============================================================================
# run_scheduled_sweep
# =============================================================================


class TestRunScheduledSweep:
    def test_runs_sweep_and_reports_summary(
        self, pending_pledge, stripe_double, receipt_sender, mock_run_lock
    ):
        """Task should run a scheduled sweep and return its counters."""
        stripe_double.get_checkout_session.return_value = ProcessorObject(
            object_id="cs_expired",
            object_type=OBJECT_CHECKOUT_SESSION,
            processor_status="expired",
        )

        result = run_scheduled_sweep.apply().get()

        assert result["status"] == "completed"
        assert result["summary"]["cancelled"] == 1
        assert result["deadline_reached"] is False
        run = ReconciliationRun.objects.get(pk=result["run_id"])
        assert run.trigger == SweepTrigger.SCHEDULED
        pending_pledge.refresh_from_db()
        assert pending_pledge.status == PledgeStatus.CANCELLED

    def test_passes_mode_and_limit(self):
        """Task arguments should become the sweep filter and limit."""
        with patch(
            "pledges.services.ReconciliationService.run_sweep"
        ) as mock_run_sweep:
            mock_run_sweep.return_value = SweepSummary(run_id=None)

            run_scheduled_sweep.apply(
                kwargs={"mode": ProcessorMode.LIVE, "limit": 50}
            ).get()

            mock_run_sweep.assert_called_once_with(
                SweepFilter(mode=ProcessorMode.LIVE),
                50,
                trigger=SweepTrigger.SCHEDULED,
            )

    def test_skips_when_sweep_in_progress(self):
        """Task should report skipped when the run lock is held."""
        with patch(
            "pledges.services.ReconciliationService.run_sweep"
        ) as mock_run_sweep:
            mock_run_sweep.side_effect = ReconciliationLockError(
                "Another reconciliation sweep is in progress"
            )

            result = run_scheduled_sweep.apply().get()

            assert result["status"] == "skipped"

    def test_reports_failed_sweep(self):
        """Task should report failure without raising."""
        with patch(
            "pledges.services.ReconciliationService.run_sweep"
        ) as mock_run_sweep:
            mock_run_sweep.side_effect = ReconciliationError("Sweep failed")

            result = run_scheduled_sweep.apply().get()

            assert result["status"] == "failed"
            assert result["error_code"] == "RECONCILIATION_ERROR"


# =============================================================================
# retry_failed_receipts
# =============================================================================


class TestRetryFailedReceipts:
    def test_resends_failed_receipts(self, db, receipt_sender):
        """Task should resend failed receipts and report counts."""
        receipt = PledgeReceiptFactory(
            status=ReceiptStatus.FAILED,
            last_error="smtp down",
        )

        result = retry_failed_receipts.apply().get()

        assert result == {"status": "completed", "sent": 1, "failed": 0, "skipped": 0}
        receipt.refresh_from_db()
        assert receipt.status == ReceiptStatus.SENT
        assert receipt.sent_at <= timezone.now()

    def test_passes_limit(self):
        with patch(
            "pledges.services.ReceiptService.resend_failed"
        ) as mock_resend:
            mock_resend.return_value = {"sent": 0, "failed": 0, "skipped": 0}

            retry_failed_receipts.apply(kwargs={"limit": 5}).get()

            mock_resend.assert_called_once_with(limit=5)

    def test_reports_unexpected_error(self):
        with patch(
            "pledges.services.ReceiptService.resend_failed"
        ) as mock_resend:
            mock_resend.side_effect = RuntimeError("database unavailable")

            result = retry_failed_receipts.apply().get()

            assert result["status"] == "failed"
            assert "database unavailable" in result["error"]
