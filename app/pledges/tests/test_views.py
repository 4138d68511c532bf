"""
Tests for the reconciliation API views.

Test Organization:
    - Trigger endpoint: authentication, validation, sweep responses
    - Outcomes endpoint: staff access and filters

Tests follow pattern: test_<method>_<scenario>_<expected_outcome>
"""

from datetime import datetime, timezone as dt_timezone
from uuid import uuid4

import pytest
from django.db import DatabaseError
from rest_framework import status
from rest_framework.test import APIClient

from core.services import ServiceResult
from pledges.adapters import OBJECT_CHECKOUT_SESSION, ProcessorObject
from pledges.exceptions import LockAcquisitionError
from pledges.models import ReconciliationRun
from pledges.services import PledgeStore, ReconciliationService, SweepFilter, SweepSummary
from pledges.state_machines import (
    PledgeStatus,
    ProcessorMode,
    ReconciliationAction,
    SweepTrigger,
)
from pledges.tests.factories import (
    PledgeFactory,
    ReconciliationOutcomeFactory,
    ReconciliationRunFactory,
)


# =============================================================================
# URL Constants
# =============================================================================


RUN_URL = "/api/v1/pledges/reconciliation/run/"
OUTCOMES_URL = "/api/v1/pledges/reconciliation/outcomes/"
CRON_SECRET = "cron-secret-for-tests"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def staff_client(staff_user):
    client = APIClient()
    client.force_authenticate(user=staff_user)
    return client


@pytest.fixture
def user_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture
def mock_trigger_sweep(mocker):
    return mocker.patch.object(
        ReconciliationService,
        "trigger_sweep",
        return_value=ServiceResult.success(SweepSummary()),
    )


# =============================================================================
# POST /reconciliation/run/
# =============================================================================


class TestTriggerAuthentication:
    def test_post_without_credentials_returns_401(self, api_client, db):
        response = api_client.post(RUN_URL, {}, format="json")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_post_with_wrong_cron_secret_returns_401(self, api_client, db):
        response = api_client.post(
            RUN_URL, {}, format="json", HTTP_X_CRON_SECRET="wrong-secret"
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_post_cron_secret_disabled_when_unset(self, api_client, db, settings):
        settings.RECONCILIATION_CRON_SECRET = ""

        response = api_client.post(
            RUN_URL, {}, format="json", HTTP_X_CRON_SECRET=CRON_SECRET
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_post_as_regular_user_returns_403(self, user_client):
        response = user_client.post(RUN_URL, {}, format="json")

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_post_with_cron_secret_runs_scheduled_sweep(
        self, api_client, db, mock_trigger_sweep
    ):
        response = api_client.post(
            RUN_URL, {}, format="json", HTTP_X_CRON_SECRET=CRON_SECRET
        )

        assert response.status_code == status.HTTP_200_OK
        kwargs = mock_trigger_sweep.call_args.kwargs
        assert kwargs["trigger"] == SweepTrigger.SCHEDULED
        assert kwargs["triggered_by"] is None

    def test_post_as_staff_runs_manual_sweep(
        self, staff_client, staff_user, mock_trigger_sweep
    ):
        response = staff_client.post(RUN_URL, {}, format="json")

        assert response.status_code == status.HTTP_200_OK
        kwargs = mock_trigger_sweep.call_args.kwargs
        assert kwargs["trigger"] == SweepTrigger.MANUAL
        assert kwargs["triggered_by"] == staff_user


class TestTriggerValidation:
    def test_post_passes_filters_to_sweep(self, staff_client, mock_trigger_sweep):
        response = staff_client.post(
            RUN_URL,
            {"mode": "live", "since": "2024-01-01T00:00:00Z", "limit": 25},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        args = mock_trigger_sweep.call_args.args
        assert args[0] == SweepFilter(
            mode=ProcessorMode.LIVE,
            created_after=datetime(2024, 1, 1, tzinfo=dt_timezone.utc),
        )
        assert args[1] == 25

    def test_post_empty_body_uses_defaults(self, staff_client, mock_trigger_sweep):
        staff_client.post(RUN_URL, {}, format="json")

        args = mock_trigger_sweep.call_args.args
        assert args == (SweepFilter(), None)

    @pytest.mark.parametrize(
        "body,field",
        [
            ({"mode": "sandbox"}, "mode"),
            ({"since": "yesterday"}, "since"),
            ({"limit": 0}, "limit"),
            ({"limit": 5000}, "limit"),
        ],
    )
    def test_post_invalid_body_returns_400(
        self, staff_client, mock_trigger_sweep, body, field
    ):
        response = staff_client.post(RUN_URL, body, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data["error_code"] == "VALIDATION_ERROR"
        assert field in response.data["details"]
        mock_trigger_sweep.assert_not_called()


class TestTriggerSweep:
    def test_post_returns_sweep_summary(
        self, staff_client, staff_user, stripe_double, receipt_sender, mock_run_lock
    ):
        pledge = PledgeFactory()
        stripe_double.get_checkout_session.return_value = ProcessorObject(
            object_id="cs_expired",
            object_type=OBJECT_CHECKOUT_SESSION,
            processor_status="expired",
        )

        response = staff_client.post(RUN_URL, {}, format="json")

        assert response.status_code == status.HTTP_200_OK
        assert response.data["success"] is True
        assert response.data["summary"]["cancelled"] == 1
        result = response.data["results"][0]
        assert result["pledgeId"] == str(pledge.id)
        assert result["beforeStatus"] == PledgeStatus.PENDING
        assert result["afterStatus"] == PledgeStatus.CANCELLED
        assert result["actionTaken"] == ReconciliationAction.CANCELLED

        run = ReconciliationRun.objects.get(pk=response.data["runId"])
        assert run.triggered_by == staff_user

    def test_post_while_sweep_running_returns_409(
        self, staff_client, stripe_double, mock_run_lock
    ):
        mock_run_lock.acquire.side_effect = LockAcquisitionError("lock held")

        response = staff_client.post(RUN_URL, {}, format="json")

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data["success"] is False
        assert response.data["error_code"] == "RECONCILIATION_IN_PROGRESS"

    def test_post_sweep_failure_returns_500(
        self, staff_client, stripe_double, mock_run_lock, mocker
    ):
        mocker.patch.object(
            PledgeStore,
            "list_pending_candidates",
            side_effect=DatabaseError("database is locked"),
        )

        response = staff_client.post(RUN_URL, {}, format="json")

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.data["error_code"] == "RECONCILIATION_ERROR"
        assert "run_id" in response.data["details"]


# =============================================================================
# GET /reconciliation/outcomes/
# =============================================================================


class TestOutcomeList:
    def test_get_as_regular_user_returns_403(self, user_client):
        response = user_client.get(OUTCOMES_URL)

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_get_cron_secret_is_not_accepted(self, api_client, db):
        response = api_client.get(OUTCOMES_URL, HTTP_X_CRON_SECRET=CRON_SECRET)

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_get_as_staff_lists_outcomes(self, staff_client):
        outcome = ReconciliationOutcomeFactory(
            action_taken=ReconciliationAction.ERROR,
            error_type="ProcessorUnavailable",
        )

        response = staff_client.get(OUTCOMES_URL)

        assert response.status_code == status.HTTP_200_OK
        assert response.data["count"] == 1
        item = response.data["results"][0]
        assert item["outcomeId"] == str(outcome.id)
        assert item["pledgeId"] == str(outcome.pledge_id)
        assert item["actionTaken"] == ReconciliationAction.ERROR
        assert item["errorType"] == "ProcessorUnavailable"

    def test_get_filters_by_pledge(self, staff_client):
        outcome = ReconciliationOutcomeFactory()
        ReconciliationOutcomeFactory()

        response = staff_client.get(OUTCOMES_URL, {"pledge": str(outcome.pledge_id)})

        assert [r["outcomeId"] for r in response.data["results"]] == [str(outcome.id)]

    def test_get_filters_by_run(self, staff_client):
        run = ReconciliationRunFactory()
        outcome = ReconciliationOutcomeFactory(run=run)
        ReconciliationOutcomeFactory()

        response = staff_client.get(OUTCOMES_URL, {"run": str(run.id)})

        assert [r["outcomeId"] for r in response.data["results"]] == [str(outcome.id)]

    def test_get_unknown_run_returns_empty_list(self, staff_client):
        ReconciliationOutcomeFactory()

        response = staff_client.get(OUTCOMES_URL, {"run": str(uuid4())})

        assert response.data["count"] == 0

    def test_get_invalid_uuid_returns_400(self, staff_client):
        response = staff_client.get(OUTCOMES_URL, {"pledge": "not-a-uuid"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
