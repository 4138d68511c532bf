"""
Tests for PledgeStore.

Tests cover:
- Candidate selection (pending only, mode and time filters, limit, order)
- Version-guarded updates
- Transitions with identifier backfill and receipt intents
"""

from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal

import pytest
from django.utils import timezone

from pledges.exceptions import InvalidStateTransitionError, StaleRecordError
from pledges.models import Pledge, PledgeReceipt
from pledges.services.identifier_resolver import ProcessorSignal, Resolution
from pledges.services.pledge_store import PledgeStore, SweepFilter
from pledges.services.transition_rules import Decision
from pledges.state_machines import (
    CancellationReason,
    LookupStrategy,
    PledgeKind,
    PledgeStatus,
    ProcessorMode,
    ReconciliationAction,
)
from pledges.tests.factories import PledgeFactory

ACTIVATE = Decision(
    new_status=PledgeStatus.ACTIVE,
    action=ReconciliationAction.ACTIVATED,
    issue_receipt=True,
)
AUTO_CANCEL = Decision(
    new_status=PledgeStatus.CANCELLED,
    action=ReconciliationAction.AUTO_CANCELLED,
)


class TestListPendingCandidates:
    def test_only_pending_oldest_first(self, db):
        now = timezone.now()
        newer = PledgeFactory(created_at=now - timedelta(hours=1))
        older = PledgeFactory(created_at=now - timedelta(hours=5))
        PledgeFactory(status=PledgeStatus.CANCELLED)

        candidates = PledgeStore.list_pending_candidates()

        assert candidates == [older, newer]

    def test_mode_filter(self, db):
        live = PledgeFactory(processor_mode=ProcessorMode.LIVE)
        PledgeFactory(processor_mode=ProcessorMode.TEST)

        candidates = PledgeStore.list_pending_candidates(
            SweepFilter(mode=ProcessorMode.LIVE)
        )

        assert candidates == [live]

    def test_created_after_filter(self, db):
        now = timezone.now()
        recent = PledgeFactory(created_at=now - timedelta(hours=1))
        PledgeFactory(created_at=now - timedelta(days=3))

        candidates = PledgeStore.list_pending_candidates(
            SweepFilter(created_after=now - timedelta(days=1))
        )

        assert candidates == [recent]

    def test_limit(self, db):
        PledgeFactory.create_batch(5)

        assert len(PledgeStore.list_pending_candidates(limit=3)) == 3


class TestUpdatePledge:
    def test_updates_and_bumps_version(self, db):
        pledge = PledgeFactory()

        updated = PledgeStore.update_pledge(
            pledge.pk, pledge.version, processor_customer_id="cus_new"
        )

        assert updated.version == 2
        assert Pledge.objects.get(pk=pledge.pk).processor_customer_id == "cus_new"

    def test_stale_version_is_rejected(self, db):
        pledge = PledgeFactory()
        PledgeStore.update_pledge(pledge.pk, 1, payer_name="Webhook")

        with pytest.raises(StaleRecordError):
            PledgeStore.update_pledge(pledge.pk, 1, payer_name="Sweep")

        assert Pledge.objects.get(pk=pledge.pk).payer_name == "Webhook"


class TestApplyTransition:
    def test_activation_backfills_and_records_receipt(self, db):
        pledge = PledgeFactory(processor_customer_id=None)
        started = datetime(2024, 1, 2, 3, 4, 5, tzinfo=dt_timezone.utc)
        resolution = Resolution(
            signal=ProcessorSignal.ACTIVE,
            strategy=LookupStrategy.SESSION,
            customer_id="cus_found",
            subscription_id="sub_found",
            amount_charged=Decimal("25.00"),
            started_at=started,
        )

        updated, receipt = PledgeStore.apply_transition(pledge, ACTIVATE, resolution)

        assert updated.status == PledgeStatus.ACTIVE
        assert updated.processor_customer_id == "cus_found"
        assert updated.processor_subscription_id == "sub_found"
        assert updated.started_at == started
        assert updated.version == pledge.version + 1
        assert receipt.target_status == PledgeStatus.ACTIVE
        assert receipt.pledge_id == pledge.pk

    def test_amount_charged_defaults_to_pledged_amount(self, db):
        pledge = PledgeFactory(kind=PledgeKind.ONE_TIME)
        decision = Decision(
            new_status=PledgeStatus.COMPLETED,
            action=ReconciliationAction.COMPLETED,
            issue_receipt=True,
        )

        updated, _ = PledgeStore.apply_transition(pledge, decision)

        assert updated.amount_charged == pledge.amount

    def test_existing_receipt_intent_is_reused(self, db):
        pledge = PledgeFactory()
        existing = PledgeReceipt.objects.create(
            pledge=pledge, target_status=PledgeStatus.ACTIVE
        )

        _, receipt = PledgeStore.apply_transition(pledge, ACTIVATE)

        assert receipt.pk == existing.pk
        assert PledgeReceipt.objects.filter(pledge=pledge).count() == 1

    def test_auto_cancel_has_no_receipt(self, db):
        pledge = PledgeFactory()

        updated, receipt = PledgeStore.apply_transition(pledge, AUTO_CANCEL)

        assert updated.status == PledgeStatus.CANCELLED
        assert updated.cancellation_reason == CancellationReason.ABANDONED
        assert receipt is None

    def test_concurrent_webhook_update_wins(self, db):
        pledge = PledgeFactory()
        # Webhook activates the pledge after the sweep read it
        webhook_copy = Pledge.objects.get(pk=pledge.pk)
        webhook_copy.activate(amount_charged=Decimal("25.00"))
        webhook_copy.save()

        with pytest.raises(StaleRecordError):
            PledgeStore.apply_transition(pledge, AUTO_CANCEL)

        reloaded = Pledge.objects.get(pk=pledge.pk)
        assert reloaded.status == PledgeStatus.ACTIVE
        assert not PledgeReceipt.objects.filter(pledge=pledge).exists()

    def test_disallowed_transition_raises(self, db):
        pledge = PledgeFactory(status=PledgeStatus.ACTIVE, amount_charged=Decimal("25.00"))

        with pytest.raises(InvalidStateTransitionError):
            PledgeStore.apply_transition(pledge, AUTO_CANCEL)

        assert Pledge.objects.get(pk=pledge.pk).status == PledgeStatus.ACTIVE
