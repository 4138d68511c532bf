"""
Tests for pledge state machine transitions using django-fsm.

Tests valid and invalid transitions and that status is protected from
direct assignment.
"""

from decimal import Decimal

import pytest
from django.utils import timezone
from django_fsm import TransitionNotAllowed

from pledges.state_machines import CancellationReason, PledgeStatus
from pledges.tests.factories import PledgeFactory


class TestPledgeTransitions:
    """Tests for Pledge state machine transitions."""

    # -------------------------------------------------------------------------
    # Valid Transitions
    # -------------------------------------------------------------------------

    def test_pending_to_active(self, db, pending_pledge):
        started = timezone.now()

        pending_pledge.activate(amount_charged=Decimal("25.00"), started_at=started)
        pending_pledge.save()

        assert pending_pledge.status == PledgeStatus.ACTIVE
        assert pending_pledge.amount_charged == Decimal("25.00")
        assert pending_pledge.started_at == started

    def test_pending_to_completed(self, db, pending_one_time_pledge):
        pending_one_time_pledge.complete(amount_charged=Decimal("26.03"))
        pending_one_time_pledge.save()

        assert pending_one_time_pledge.status == PledgeStatus.COMPLETED
        assert pending_one_time_pledge.amount_charged == Decimal("26.03")
        assert pending_one_time_pledge.started_at is not None

    def test_pending_to_cancelled(self, db, pending_pledge):
        pending_pledge.cancel()
        pending_pledge.save()

        assert pending_pledge.status == PledgeStatus.CANCELLED
        assert pending_pledge.cancellation_reason == CancellationReason.PROCESSOR_CANCELLED
        assert pending_pledge.cancelled_at is not None

    def test_active_to_cancelled(self, db, active_pledge):
        active_pledge.cancel()
        active_pledge.save()

        assert active_pledge.status == PledgeStatus.CANCELLED

    def test_auto_cancel_marks_abandoned(self, db, pending_pledge):
        pending_pledge.auto_cancel()
        pending_pledge.save()

        assert pending_pledge.status == PledgeStatus.CANCELLED
        assert pending_pledge.cancellation_reason == CancellationReason.ABANDONED

    # -------------------------------------------------------------------------
    # Invalid Transitions
    # -------------------------------------------------------------------------

    def test_active_cannot_be_auto_cancelled(self, db, active_pledge):
        with pytest.raises(TransitionNotAllowed):
            active_pledge.auto_cancel()

    def test_active_cannot_complete(self, db, active_pledge):
        with pytest.raises(TransitionNotAllowed):
            active_pledge.complete(amount_charged=Decimal("25.00"))

    def test_cancelled_is_terminal(self, db):
        pledge = PledgeFactory(status=PledgeStatus.CANCELLED)

        assert pledge.is_terminal
        with pytest.raises(TransitionNotAllowed):
            pledge.activate(amount_charged=Decimal("25.00"))
        with pytest.raises(TransitionNotAllowed):
            pledge.cancel()

    def test_status_is_protected(self, db, pending_pledge):
        with pytest.raises(AttributeError):
            pending_pledge.status = PledgeStatus.ACTIVE
