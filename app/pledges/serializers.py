"""
Serializers for the reconciliation API.

- ReconciliationTriggerSerializer: Validates the trigger request body
- ReconciliationOutcomeSerializer: Audit log entries (camelCase, read-only)
"""

from __future__ import annotations

from django.conf import settings
from rest_framework import serializers

from pledges.models import ReconciliationOutcome
from pledges.services.config import DEFAULT_MAX_LIMIT
from pledges.state_machines import ProcessorMode


class ReconciliationTriggerSerializer(serializers.Serializer):
    """
    Request body of POST /api/v1/pledges/reconciliation/run/.

    All fields are optional; an empty body sweeps every configured mode
    with the default limit.
    """

    mode = serializers.ChoiceField(
        choices=ProcessorMode.choices,
        required=False,
        allow_null=True,
        help_text="Only reconcile pledges of this processor mode",
    )
    since = serializers.DateTimeField(
        required=False,
        allow_null=True,
        help_text="Only reconcile pledges created at or after this time (ISO-8601)",
    )
    limit = serializers.IntegerField(
        required=False,
        allow_null=True,
        min_value=1,
        help_text="Maximum number of pledges to consider",
    )

    def validate_limit(self, value: int | None) -> int | None:
        max_limit = getattr(settings, "RECONCILIATION_MAX_LIMIT", DEFAULT_MAX_LIMIT)
        if value is not None and value > max_limit:
            raise serializers.ValidationError(
                f"Ensure this value is less than or equal to {max_limit}."
            )
        return value


class ReconciliationOutcomeSerializer(serializers.ModelSerializer):
    """One reconciliation decision from the audit log."""

    outcomeId = serializers.UUIDField(source="id", read_only=True)
    runId = serializers.UUIDField(source="run_id", read_only=True)
    pledgeId = serializers.UUIDField(source="pledge_id", read_only=True)
    beforeStatus = serializers.CharField(source="before_status", read_only=True)
    afterStatus = serializers.CharField(source="after_status", read_only=True)
    strategyUsed = serializers.CharField(source="strategy_used", read_only=True)
    processorObjectId = serializers.CharField(
        source="processor_object_id", read_only=True
    )
    processorReportedStatus = serializers.CharField(
        source="processor_reported_status", read_only=True
    )
    actionTaken = serializers.CharField(source="action_taken", read_only=True)
    errorType = serializers.CharField(source="error_type", read_only=True)
    errorDetail = serializers.CharField(source="error_detail", read_only=True)
    createdAt = serializers.DateTimeField(source="created_at", read_only=True)

    class Meta:
        model = ReconciliationOutcome
        fields = [
            "outcomeId",
            "runId",
            "pledgeId",
            "beforeStatus",
            "afterStatus",
            "strategyUsed",
            "processorObjectId",
            "processorReportedStatus",
            "actionTaken",
            "errorType",
            "errorDetail",
            "createdAt",
        ]
        read_only_fields = fields
