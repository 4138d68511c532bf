"""
Initial schema for pledges and the reconciliation audit trail.

Creates:
    - Pledge: local pledge record with FSM status and optimistic version
    - ReconciliationRun: one row per sweep
    - ReconciliationOutcome: one immutable row per pledge per sweep
    - PledgeReceipt: receipt intent keyed by (pledge, target_status)
"""

import uuid

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
import django_fsm
from decimal import Decimal
from django.conf import settings
from django.db import migrations, models


PLEDGE_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("active", "Active"),
    ("completed", "Completed"),
    ("cancelled", "Cancelled"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Pledge",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID v4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "kind",
                    models.CharField(
                        choices=[("one_time", "One-time"), ("recurring", "Recurring")],
                        help_text="One-time charge or recurring subscription",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=PLEDGE_STATUS_CHOICES,
                        db_index=True,
                        default="pending",
                        help_text="Current pledge status",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "amount",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Pledged amount at checkout",
                        max_digits=10,
                        validators=[
                            django.core.validators.MinValueValidator(Decimal("0.01"))
                        ],
                    ),
                ),
                (
                    "amount_charged",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Amount settled by the processor (set on activation/completion)",
                        max_digits=10,
                        null=True,
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        db_index=True,
                        default=django.utils.timezone.now,
                        help_text="When the pledge was created at checkout",
                    ),
                ),
                (
                    "started_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the processor confirmed the pledge",
                        null=True,
                    ),
                ),
                (
                    "cancelled_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the pledge was cancelled",
                        null=True,
                    ),
                ),
                (
                    "cancellation_reason",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("processor_cancelled", "Cancelled at processor"),
                            ("abandoned", "Abandoned checkout"),
                        ],
                        help_text="Why the pledge was cancelled",
                        max_length=30,
                    ),
                ),
                (
                    "processor_mode",
                    models.CharField(
                        choices=[("test", "Test"), ("live", "Live")],
                        db_index=True,
                        help_text="Stripe credential mode (test or live)",
                        max_length=10,
                    ),
                ),
                (
                    "processor_customer_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Stripe Customer ID (cus_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "processor_checkout_session_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Stripe Checkout Session ID (cs_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "processor_subscription_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Stripe Subscription ID (sub_xxx), recurring pledges only",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "processor_charge_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Stripe PaymentIntent ID (pi_xxx), one-time pledges only",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "payer_email",
                    models.EmailField(
                        blank=True,
                        help_text="Email captured at checkout",
                        max_length=254,
                        null=True,
                    ),
                ),
                (
                    "payer_name",
                    models.CharField(
                        blank=True,
                        help_text="Display name captured at checkout",
                        max_length=255,
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Additional pledge metadata",
                    ),
                ),
                (
                    "payer",
                    models.ForeignKey(
                        blank=True,
                        help_text="Internal user who made the pledge",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="pledges",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Pledge",
                "verbose_name_plural": "Pledges",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "processor_mode", "created_at"],
                        name="pledge_status_mode_created_idx",
                    ),
                    models.Index(
                        fields=["processor_customer_id", "created_at"],
                        name="pledge_customer_created_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="pledge_amount_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(
                                ("kind", "one_time"),
                                ("processor_subscription_id__isnull", True),
                            ),
                            models.Q(
                                ("kind", "recurring"),
                                ("processor_charge_id__isnull", True),
                            ),
                            _connector="OR",
                        ),
                        name="pledge_identifier_matches_kind",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("amount_charged__isnull", True),
                            models.Q(("status", "pending"), _negated=True),
                            _connector="OR",
                        ),
                        name="pledge_amount_charged_after_confirmation",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ReconciliationRun",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID v4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                ("started_at", models.DateTimeField(help_text="When this sweep started")),
                (
                    "completed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When this sweep completed (or failed)",
                        null=True,
                    ),
                ),
                (
                    "trigger",
                    models.CharField(
                        choices=[("scheduled", "Scheduled"), ("manual", "Manual")],
                        default="scheduled",
                        help_text="Scheduler or manual trigger",
                        max_length=20,
                    ),
                ),
                (
                    "mode",
                    models.CharField(
                        blank=True,
                        help_text="Processor mode filter (blank = all configured modes)",
                        max_length=10,
                    ),
                ),
                (
                    "since",
                    models.DateTimeField(
                        blank=True,
                        help_text="Only pledges created at or after this time were considered",
                        null=True,
                    ),
                ),
                (
                    "limit",
                    models.PositiveIntegerField(
                        help_text="Maximum number of pledges considered"
                    ),
                ),
                (
                    "deadline_reached",
                    models.BooleanField(
                        default=False,
                        help_text="Whether the sweep stopped early at its deadline",
                    ),
                ),
                (
                    "total",
                    models.PositiveIntegerField(default=0, help_text="Pledges processed"),
                ),
                (
                    "activated",
                    models.PositiveIntegerField(default=0, help_text="Pledges activated"),
                ),
                (
                    "completed",
                    models.PositiveIntegerField(default=0, help_text="Pledges completed"),
                ),
                (
                    "cancelled",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Pledges cancelled on processor signal",
                    ),
                ),
                (
                    "auto_cancelled",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Pledges auto-cancelled as abandoned",
                    ),
                ),
                (
                    "skipped",
                    models.PositiveIntegerField(default=0, help_text="Pledges left unchanged"),
                ),
                (
                    "errors",
                    models.PositiveIntegerField(default=0, help_text="Pledges that errored"),
                ),
                (
                    "receipts_sent",
                    models.PositiveIntegerField(default=0, help_text="Receipts sent"),
                ),
                (
                    "receipt_errors",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Receipts that failed to send",
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("running", "Running"),
                            ("completed", "Completed"),
                            ("partial", "Partial"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="running",
                        help_text="Current status of this sweep",
                        max_length=20,
                    ),
                ),
                (
                    "error_message",
                    models.TextField(
                        blank=True,
                        help_text="Error message if the sweep failed",
                    ),
                ),
                (
                    "triggered_by",
                    models.ForeignKey(
                        blank=True,
                        help_text="Administrator who started a manual sweep",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="reconciliation_runs",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-started_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "started_at"],
                        name="recon_run_status_started_idx",
                    ),
                    models.Index(fields=["started_at"], name="recon_run_started_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ReconciliationOutcome",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID v4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "before_status",
                    models.CharField(
                        choices=PLEDGE_STATUS_CHOICES,
                        help_text="Pledge status when the sweep looked at it",
                        max_length=20,
                    ),
                ),
                (
                    "after_status",
                    models.CharField(
                        choices=PLEDGE_STATUS_CHOICES,
                        help_text="Pledge status after the sweep",
                        max_length=20,
                    ),
                ),
                (
                    "strategy_used",
                    models.CharField(
                        choices=[
                            ("session", "Checkout session"),
                            ("subscription_id", "Subscription ID"),
                            ("customer_search", "Customer search"),
                            ("age_timeout", "Age timeout"),
                            ("none", "None"),
                        ],
                        default="none",
                        help_text="Lookup that produced the decision",
                        max_length=30,
                    ),
                ),
                (
                    "processor_object_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe object consulted (cs_xxx, sub_xxx, pi_xxx)",
                        max_length=255,
                    ),
                ),
                (
                    "processor_reported_status",
                    models.CharField(
                        blank=True,
                        help_text="Status reported by Stripe",
                        max_length=50,
                    ),
                ),
                (
                    "action_taken",
                    models.CharField(
                        choices=[
                            ("activated", "Activated"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                            ("auto_cancelled", "Auto-cancelled"),
                            ("skipped", "Skipped"),
                            ("error", "Error"),
                        ],
                        db_index=True,
                        help_text="What the sweep did",
                        max_length=20,
                    ),
                ),
                (
                    "error_type",
                    models.CharField(
                        blank=True,
                        help_text="Error taxonomy name when the pledge errored or was skipped",
                        max_length=50,
                    ),
                ),
                (
                    "error_detail",
                    models.TextField(
                        blank=True,
                        help_text="Error message and suggested cause",
                    ),
                ),
                (
                    "pledge",
                    models.ForeignKey(
                        help_text="The pledge this decision is about",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="reconciliation_outcomes",
                        to="pledges.pledge",
                    ),
                ),
                (
                    "run",
                    models.ForeignKey(
                        help_text="The sweep that made this decision",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="outcomes",
                        to="pledges.reconciliationrun",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["pledge", "created_at"],
                        name="recon_outcome_pledge_idx",
                    ),
                    models.Index(
                        fields=["run", "action_taken"],
                        name="recon_outcome_run_action_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PledgeReceipt",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID v4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "target_status",
                    models.CharField(
                        choices=PLEDGE_STATUS_CHOICES,
                        help_text="Status transition the receipt confirms",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("sending", "Sending"),
                            ("sent", "Sent"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Delivery status",
                        max_length=20,
                    ),
                ),
                (
                    "attempts",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Number of send attempts",
                    ),
                ),
                (
                    "sent_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the receipt was delivered",
                        null=True,
                    ),
                ),
                (
                    "last_error",
                    models.TextField(
                        blank=True,
                        help_text="Error from the last failed attempt",
                    ),
                ),
                (
                    "outcome",
                    models.ForeignKey(
                        blank=True,
                        help_text="Outcome that recorded this intent",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="receipts",
                        to="pledges.reconciliationoutcome",
                    ),
                ),
                (
                    "pledge",
                    models.ForeignKey(
                        help_text="Pledge the receipt is for",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="receipts",
                        to="pledges.pledge",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=["pledge", "target_status"],
                        name="unique_receipt_per_pledge_transition",
                    ),
                ],
            },
        ),
    ]
