"""
Reconciliation models: the append-only audit trail of sweeps.

This module provides models for persisting reconciliation history:
- ReconciliationRun: One row per sweep with its filters and summary counts
- ReconciliationOutcome: One immutable row per pledge per sweep
- PledgeReceipt: Receipt intent recorded with a status transition

These models enable:
1. Operator review of every decision a sweep made
2. At-most-once receipts across retried or overlapping sweeps
3. Run-level metrics on reconciliation health

Usage:
    from pledges.models import ReconciliationOutcome

    # Everything the engine decided for one pledge
    ReconciliationOutcome.objects.for_pledge(pledge.id)

    # Everything one sweep decided
    ReconciliationOutcome.objects.for_run(run.id)
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.models import BaseModel, UUIDPrimaryKeyMixin

from pledges.state_machines import (
    LookupStrategy,
    PledgeStatus,
    ReceiptStatus,
    ReconciliationAction,
    ReconciliationRunStatus,
    SweepTrigger,
)


class ReconciliationRun(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks a reconciliation sweep execution.

    The sweep creates the run when it starts, and fills in the summary
    counters and final status when it finishes.

    Indexes:
        - (status, started_at): For finding recent runs by status
        - (started_at): For time-based queries

    Example:
        run = ReconciliationRun.objects.create(
            started_at=timezone.now(),
            trigger=SweepTrigger.SCHEDULED,
            mode="live",
            limit=500,
        )
    """

    started_at = models.DateTimeField(
        help_text="When this sweep started",
    )
    completed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When this sweep completed (or failed)",
    )

    # How and with which filters the sweep ran
    trigger = models.CharField(
        max_length=20,
        choices=SweepTrigger.choices,
        default=SweepTrigger.SCHEDULED,
        help_text="Scheduler or manual trigger",
    )
    triggered_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="reconciliation_runs",
        help_text="Administrator who started a manual sweep",
    )
    mode = models.CharField(
        max_length=10,
        blank=True,
        help_text="Processor mode filter (blank = all configured modes)",
    )
    since = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Only pledges created at or after this time were considered",
    )
    limit = models.PositiveIntegerField(
        help_text="Maximum number of pledges considered",
    )
    deadline_reached = models.BooleanField(
        default=False,
        help_text="Whether the sweep stopped early at its deadline",
    )

    # Results summary
    total = models.PositiveIntegerField(default=0, help_text="Pledges processed")
    activated = models.PositiveIntegerField(default=0, help_text="Pledges activated")
    completed = models.PositiveIntegerField(default=0, help_text="Pledges completed")
    cancelled = models.PositiveIntegerField(
        default=0,
        help_text="Pledges cancelled on processor signal",
    )
    auto_cancelled = models.PositiveIntegerField(
        default=0,
        help_text="Pledges auto-cancelled as abandoned",
    )
    skipped = models.PositiveIntegerField(default=0, help_text="Pledges left unchanged")
    errors = models.PositiveIntegerField(default=0, help_text="Pledges that errored")
    receipts_sent = models.PositiveIntegerField(default=0, help_text="Receipts sent")
    receipt_errors = models.PositiveIntegerField(
        default=0,
        help_text="Receipts that failed to send",
    )

    status = models.CharField(
        max_length=20,
        choices=ReconciliationRunStatus.choices,
        default=ReconciliationRunStatus.RUNNING,
        db_index=True,
        help_text="Current status of this sweep",
    )
    error_message = models.TextField(
        blank=True,
        help_text="Error message if the sweep failed",
    )

    class Meta:
        indexes = [
            models.Index(
                fields=["status", "started_at"],
                name="recon_run_status_started_idx",
            ),
            models.Index(fields=["started_at"], name="recon_run_started_idx"),
        ]
        ordering = ["-started_at"]

    def __str__(self) -> str:
        return f"ReconciliationRun({self.id}, {self.status}, {self.started_at})"

    @property
    def duration_seconds(self) -> float | None:
        """Calculate run duration in seconds, or None if not complete."""
        if self.completed_at and self.started_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class ReconciliationOutcomeQuerySet(models.QuerySet):
    def for_pledge(self, pledge_id):
        return self.filter(pledge_id=pledge_id)

    def for_run(self, run_id):
        return self.filter(run_id=run_id)


class ReconciliationOutcome(UUIDPrimaryKeyMixin, BaseModel):
    """
    One reconciliation decision for one pledge in one sweep.

    Outcomes are append-only: saving an existing outcome or deleting one
    raises, so the audit trail always reflects what the sweep decided.

    Indexes:
        - (pledge, created_at): History of a single pledge
        - (run, action_taken): Run-level statistics
    """

    run = models.ForeignKey(
        ReconciliationRun,
        on_delete=models.PROTECT,
        related_name="outcomes",
        help_text="The sweep that made this decision",
    )
    pledge = models.ForeignKey(
        "pledges.Pledge",
        on_delete=models.PROTECT,
        related_name="reconciliation_outcomes",
        help_text="The pledge this decision is about",
    )

    before_status = models.CharField(
        max_length=20,
        choices=PledgeStatus.choices,
        help_text="Pledge status when the sweep looked at it",
    )
    after_status = models.CharField(
        max_length=20,
        choices=PledgeStatus.choices,
        help_text="Pledge status after the sweep",
    )
    strategy_used = models.CharField(
        max_length=30,
        choices=LookupStrategy.choices,
        default=LookupStrategy.NONE,
        help_text="Lookup that produced the decision",
    )
    processor_object_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stripe object consulted (cs_xxx, sub_xxx, pi_xxx)",
    )
    processor_reported_status = models.CharField(
        max_length=50,
        blank=True,
        help_text="Status reported by Stripe",
    )
    action_taken = models.CharField(
        max_length=20,
        choices=ReconciliationAction.choices,
        db_index=True,
        help_text="What the sweep did",
    )
    error_type = models.CharField(
        max_length=50,
        blank=True,
        help_text="Error taxonomy name when the pledge errored or was skipped",
    )
    error_detail = models.TextField(
        blank=True,
        help_text="Error message and suggested cause",
    )

    objects = ReconciliationOutcomeQuerySet.as_manager()

    class Meta:
        indexes = [
            models.Index(
                fields=["pledge", "created_at"],
                name="recon_outcome_pledge_idx",
            ),
            models.Index(
                fields=["run", "action_taken"],
                name="recon_outcome_run_action_idx",
            ),
        ]
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"Outcome({self.pledge_id}, {self.action_taken})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Reconciliation outcomes are immutable")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Reconciliation outcomes are immutable")


class PledgeReceipt(UUIDPrimaryKeyMixin, BaseModel):
    """
    Receipt intent for a pledge transition.

    Recorded in the same transaction as the status transition, keyed by
    (pledge, target_status). The sweep claims a receipt (PENDING/FAILED ->
    SENDING) with a conditional single-row update before calling the
    receipt collaborator, so a retried or concurrent sweep never sends
    twice.
    """

    pledge = models.ForeignKey(
        "pledges.Pledge",
        on_delete=models.PROTECT,
        related_name="receipts",
        help_text="Pledge the receipt is for",
    )
    target_status = models.CharField(
        max_length=20,
        choices=PledgeStatus.choices,
        help_text="Status transition the receipt confirms",
    )
    outcome = models.ForeignKey(
        ReconciliationOutcome,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="receipts",
        help_text="Outcome that recorded this intent",
    )
    status = models.CharField(
        max_length=20,
        choices=ReceiptStatus.choices,
        default=ReceiptStatus.PENDING,
        db_index=True,
        help_text="Delivery status",
    )
    attempts = models.PositiveIntegerField(
        default=0,
        help_text="Number of send attempts",
    )
    sent_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the receipt was delivered",
    )
    last_error = models.TextField(
        blank=True,
        help_text="Error from the last failed attempt",
    )

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["pledge", "target_status"],
                name="unique_receipt_per_pledge_transition",
            ),
        ]
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"Receipt({self.pledge_id}, {self.target_status}, {self.status})"


__all__ = [
    "PledgeReceipt",
    "ReconciliationOutcome",
    "ReconciliationRun",
]
