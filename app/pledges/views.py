"""
DRF views for the pledges app.

Endpoints:
    POST /api/v1/pledges/reconciliation/run/ - Run a reconciliation sweep
    GET /api/v1/pledges/reconciliation/outcomes/ - Browse the audit log

Security:
    - The trigger accepts the scheduler's X-Cron-Secret or a staff user
    - The audit log is staff only
"""

from __future__ import annotations

import logging
import uuid

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, OpenApiResponse, extend_schema
from rest_framework import generics, status
from rest_framework.authentication import SessionAuthentication
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework_simplejwt.authentication import JWTAuthentication

from pledges.authentication import CronSecretAuthentication
from pledges.exceptions import ReconciliationError
from pledges.models import ReconciliationOutcome
from pledges.permissions import IsReconciliationOperator, is_scheduler_request
from pledges.serializers import (
    ReconciliationOutcomeSerializer,
    ReconciliationTriggerSerializer,
)
from pledges.services import ReconciliationService, SweepFilter
from pledges.state_machines import SweepTrigger

logger = logging.getLogger(__name__)


class ReconciliationTriggerView(APIView):
    """
    Run one reconciliation sweep synchronously.

    POST /api/v1/pledges/reconciliation/run/

    Request body (all optional):
        {"mode": "test", "since": "2024-01-01T00:00:00Z", "limit": 200}

    Response:
        200 OK: Sweep summary with per-pledge results
        400 Bad Request: Invalid mode, timestamp or limit
        401 Unauthorized: Missing or invalid credentials
        403 Forbidden: Authenticated but not an administrator
        409 Conflict: Another sweep is already running
    """

    authentication_classes = [
        CronSecretAuthentication,
        JWTAuthentication,
        SessionAuthentication,
    ]
    permission_classes = [IsReconciliationOperator]

    @extend_schema(
        operation_id="run_reconciliation_sweep",
        summary="Run reconciliation sweep",
        description=(
            "Reconcile pending pledges against Stripe and return a summary. "
            "Authenticate with the X-Cron-Secret header (scheduler) or as a "
            "staff user."
        ),
        request=ReconciliationTriggerSerializer,
        responses={
            200: OpenApiResponse(
                response=OpenApiTypes.OBJECT,
                description="Sweep summary",
            ),
            400: OpenApiResponse(description="Invalid request body"),
            401: OpenApiResponse(description="Authentication required"),
            403: OpenApiResponse(description="Administrator access required"),
            409: OpenApiResponse(description="A sweep is already running"),
        },
        tags=["Pledges - Reconciliation"],
    )
    def post(self, request):
        serializer = ReconciliationTriggerSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(
                {
                    "success": False,
                    "error": "Invalid request",
                    "error_code": "VALIDATION_ERROR",
                    "details": serializer.errors,
                },
                status=status.HTTP_400_BAD_REQUEST,
            )

        data = serializer.validated_data
        sweep_filter = SweepFilter(
            mode=data.get("mode") or None,
            created_after=data.get("since"),
        )

        if is_scheduler_request(request):
            trigger = SweepTrigger.SCHEDULED
            triggered_by = None
        else:
            trigger = SweepTrigger.MANUAL
            triggered_by = request.user

        try:
            result = ReconciliationService.trigger_sweep(
                sweep_filter,
                data.get("limit"),
                trigger=trigger,
                triggered_by=triggered_by,
            )
        except ReconciliationError as e:
            logger.error(
                f"Reconciliation sweep failed: {e}",
                extra={"trigger": trigger},
            )
            return Response(
                {"success": False, **e.to_dict()},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        if not result.success:
            return Response(result.to_response(), status=status.HTTP_409_CONFLICT)

        return Response(result.data.to_dict(), status=status.HTTP_200_OK)


class ReconciliationOutcomeListView(generics.ListAPIView):
    """
    List reconciliation outcomes, newest first.

    GET /api/v1/pledges/reconciliation/outcomes/?pledge=<uuid>&run=<uuid>
    """

    serializer_class = ReconciliationOutcomeSerializer
    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="list_reconciliation_outcomes",
        summary="List reconciliation outcomes",
        parameters=[
            OpenApiParameter(
                name="pledge",
                type=OpenApiTypes.UUID,
                location=OpenApiParameter.QUERY,
                description="Only outcomes for this pledge",
            ),
            OpenApiParameter(
                name="run",
                type=OpenApiTypes.UUID,
                location=OpenApiParameter.QUERY,
                description="Only outcomes recorded by this sweep",
            ),
        ],
        tags=["Pledges - Reconciliation"],
    )
    def get(self, request, *args, **kwargs):
        return super().get(request, *args, **kwargs)

    def get_queryset(self):
        queryset = ReconciliationOutcome.objects.order_by("-created_at")
        pledge_id = self._uuid_param("pledge")
        if pledge_id:
            queryset = queryset.filter(pledge_id=pledge_id)
        run_id = self._uuid_param("run")
        if run_id:
            queryset = queryset.filter(run_id=run_id)
        return queryset

    def _uuid_param(self, name: str) -> uuid.UUID | None:
        value = self.request.query_params.get(name)
        if not value:
            return None
        try:
            return uuid.UUID(value)
        except ValueError:
            raise ValidationError({name: "Must be a valid UUID."})
