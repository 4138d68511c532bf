"""
Factory Boy factories for pledge test data.

Usage:
    from pledges.tests.factories import PledgeFactory, ReconciliationRunFactory

    # Pending recurring test-mode pledge created an hour ago
    pledge = PledgeFactory()

    # One-time live pledge with a charge already captured
    pledge = PledgeFactory(
        kind=PledgeKind.ONE_TIME,
        processor_mode=ProcessorMode.LIVE,
        processor_charge_id="pi_live_123",
    )

    # Pledge still inside the webhook grace window
    pledge = PledgeFactory(created_at=timezone.now())
"""

from datetime import timedelta
from decimal import Decimal

import factory
from django.utils import timezone

from pledges.models import (
    Pledge,
    PledgeReceipt,
    ReconciliationOutcome,
    ReconciliationRun,
)
from pledges.state_machines import (
    PledgeKind,
    PledgeStatus,
    ProcessorMode,
    ReconciliationAction,
    SweepTrigger,
)


class UserFactory(factory.django.DjangoModelFactory):
    """Factory for the default auth User."""

    class Meta:
        model = "auth.User"
        skip_postgeneration_save = True

    username = factory.Sequence(lambda n: f"user{n}")
    email = factory.Sequence(lambda n: f"user{n}@example.com")
    first_name = "Dana"
    last_name = "Donor"
    password = factory.PostGenerationMethodCall("set_password", "testpass123")
    is_active = True


class StaffUserFactory(UserFactory):
    is_staff = True


class PledgeFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating Pledge instances.

    Default creates a PENDING recurring $25.00 test-mode pledge, one hour
    old (past the grace window, younger than the stale threshold), with a
    checkout session and customer ID.

    Note: status is protected by django-fsm; pass it only at creation.
    """

    class Meta:
        model = Pledge
        skip_postgeneration_save = True

    kind = PledgeKind.RECURRING
    amount = Decimal("25.00")
    currency = "usd"
    processor_mode = ProcessorMode.TEST
    processor_checkout_session_id = factory.Sequence(lambda n: f"cs_test_{n:06d}")
    processor_customer_id = factory.Sequence(lambda n: f"cus_test_{n:06d}")
    payer_email = factory.Sequence(lambda n: f"donor{n}@example.com")
    payer_name = "Dana Donor"
    created_at = factory.LazyFunction(lambda: timezone.now() - timedelta(hours=1))
    metadata = factory.LazyFunction(dict)


class ReconciliationRunFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ReconciliationRun
        skip_postgeneration_save = True

    started_at = factory.LazyFunction(timezone.now)
    trigger = SweepTrigger.SCHEDULED
    limit = 500


class ReconciliationOutcomeFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ReconciliationOutcome
        skip_postgeneration_save = True

    run = factory.SubFactory(ReconciliationRunFactory)
    pledge = factory.SubFactory(PledgeFactory)
    before_status = PledgeStatus.PENDING
    after_status = PledgeStatus.PENDING
    action_taken = ReconciliationAction.SKIPPED


class PledgeReceiptFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PledgeReceipt
        skip_postgeneration_save = True

    pledge = factory.SubFactory(
        PledgeFactory,
        status=PledgeStatus.ACTIVE,
        amount_charged=Decimal("25.00"),
    )
    target_status = PledgeStatus.ACTIVE
