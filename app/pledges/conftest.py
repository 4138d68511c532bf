"""
Pytest fixtures shared by all pledge test packages.

Fixtures provide pledges in various states, a fake receipt sender, a mock
Redis client for lock tests and a Stripe double for reconciliation tests.

Usage:
    def test_activation(pending_pledge, stripe_double):
        stripe_double.get_checkout_session.return_value = ...
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from pledges.services import ReceiptService, ReconciliationService
from pledges.state_machines import PledgeKind, PledgeStatus
from pledges.tests.factories import (
    PledgeFactory,
    ReconciliationRunFactory,
    StaffUserFactory,
    UserFactory,
)


# =============================================================================
# User Fixtures
# =============================================================================


@pytest.fixture
def user(db):
    return UserFactory()


@pytest.fixture
def staff_user(db):
    return StaffUserFactory()


# =============================================================================
# Pledge Fixtures
# =============================================================================


@pytest.fixture
def pending_pledge(db):
    """Pending recurring pledge past the grace window."""
    return PledgeFactory()


@pytest.fixture
def pending_one_time_pledge(db):
    return PledgeFactory(kind=PledgeKind.ONE_TIME)


@pytest.fixture
def active_pledge(db):
    return PledgeFactory(
        status=PledgeStatus.ACTIVE,
        amount_charged=Decimal("25.00"),
        processor_subscription_id="sub_test_active",
    )


@pytest.fixture
def reconciliation_run(db):
    return ReconciliationRunFactory()


# =============================================================================
# Collaborator Doubles
# =============================================================================


class RecordingSender:
    """Receipt sender that records payloads instead of sending email."""

    def __init__(self):
        self.receipts = []
        self.notices = []
        self.fail_with: Exception | None = None

    def send_receipt(self, payload):
        if self.fail_with:
            raise self.fail_with
        self.receipts.append(payload)

    def send_auto_cancel_notice(self, payload):
        if self.fail_with:
            raise self.fail_with
        self.notices.append(payload)


@pytest.fixture
def receipt_sender():
    """Install a RecordingSender on ReceiptService for the test."""
    sender = RecordingSender()
    ReceiptService.set_sender(sender)
    yield sender
    ReceiptService.set_sender(None)


@pytest.fixture
def stripe_double():
    """
    Install a Stripe adapter double on ReconciliationService.

    Every lookup returns None (object missing) unless the test configures it.
    """
    double = MagicMock()
    double.is_mode_configured.return_value = True
    double.get_checkout_session.return_value = None
    double.get_subscription.return_value = None
    double.search_by_customer_and_window.return_value = None
    ReconciliationService.set_stripe_adapter(double)
    yield double
    ReconciliationService.set_stripe_adapter(None)


@pytest.fixture
def mock_run_lock(mocker):
    """Replace the sweep's Redis lock with a MagicMock."""
    lock = MagicMock()
    lock.acquire.return_value = True
    lock.extend.return_value = True
    mocker.patch(
        "pledges.services.reconciliation_service.DistributedLock",
        return_value=lock,
    )
    return lock


@pytest.fixture
def mock_redis(mocker):
    """Mock Redis client for distributed lock tests."""
    mock_client = mocker.MagicMock()
    mock_client.set.return_value = True
    mock_client.eval.return_value = 1
    mocker.patch("pledges.locks.get_redis_connection", return_value=mock_client)
    return mock_client
