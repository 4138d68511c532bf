"""
Pledge model: the local record of a promise to pay.

A Pledge is created in PENDING at checkout initiation (outside this app)
and moved forward either by the webhook handler or by the reconciliation
sweep once the processor confirms, cancels, or never completes it.

Usage:
    from pledges.models import Pledge
    from pledges.state_machines import PledgeKind, ProcessorMode

    pledge = Pledge.objects.create(
        kind=PledgeKind.RECURRING,
        amount=Decimal("25.00"),
        processor_mode=ProcessorMode.LIVE,
        processor_checkout_session_id="cs_live_123",
        payer_email="donor@example.com",
    )

    # State transitions using django-fsm
    pledge.activate(amount_charged=Decimal("25.00"), started_at=timezone.now())
    pledge.save()
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel, UUIDPrimaryKeyMixin

from pledges.exceptions import InvalidModeMismatch
from pledges.state_machines import (
    CancellationReason,
    PledgeKind,
    PledgeStatus,
    ProcessorMode,
)

PROCESSOR_IDENTIFIER_FIELDS = (
    "processor_customer_id",
    "processor_checkout_session_id",
    "processor_subscription_id",
    "processor_charge_id",
)


class PledgeQuerySet(models.QuerySet):
    """Query helpers used by the reconciliation sweep."""

    def pending(self):
        return self.filter(status=PledgeStatus.PENDING)

    def for_mode(self, mode: str | None):
        if not mode:
            return self
        return self.filter(processor_mode=mode)

    def created_between(
        self,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
    ):
        qs = self
        if created_after is not None:
            qs = qs.filter(created_at__gte=created_after)
        if created_before is not None:
            qs = qs.filter(created_at__lte=created_before)
        return qs


class Pledge(UUIDPrimaryKeyMixin, BaseModel):
    """
    A one-time or recurring payment commitment fulfilled by Stripe.

    Uses django-fsm for the status machine and optimistic locking via the
    version field for concurrency control with the webhook handler.

    State Flow:
        PENDING -> ACTIVE -> CANCELLED (recurring)
        PENDING -> COMPLETED (one-time)
        PENDING -> CANCELLED (processor cancellation or abandoned checkout)

    Fields:
        kind: one_time or recurring
        status: Current status (FSM protected)
        amount: Pledged amount in major currency units
        amount_charged: Amount the processor actually settled
        created_at: When the pledge was created at checkout
        started_at: When the processor confirmed the pledge
        processor_mode: test or live credentials (immutable once linked)
        processor_*_id: Identifiers captured at checkout or backfilled
        payer / payer_email / payer_name: Who receives the receipt
        version: Optimistic locking version

    Note:
        status is protected and can only change through the transition
        methods. Pledges are never deleted; cancelled ones remain for audit.
    """

    kind = models.CharField(
        max_length=20,
        choices=PledgeKind.choices,
        help_text="One-time charge or recurring subscription",
    )

    status = FSMField(
        default=PledgeStatus.PENDING,
        choices=PledgeStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current pledge status",
    )

    amount = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal("0.01"))],
        help_text="Pledged amount at checkout",
    )
    amount_charged = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Amount settled by the processor (set on activation/completion)",
    )
    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    # Overrides the auto_now_add timestamp: this is the checkout time the
    # grace window and stale threshold are measured from.
    created_at = models.DateTimeField(
        default=timezone.now,
        db_index=True,
        help_text="When the pledge was created at checkout",
    )
    started_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the processor confirmed the pledge",
    )
    cancelled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the pledge was cancelled",
    )
    cancellation_reason = models.CharField(
        max_length=30,
        choices=CancellationReason.choices,
        blank=True,
        help_text="Why the pledge was cancelled",
    )

    processor_mode = models.CharField(
        max_length=10,
        choices=ProcessorMode.choices,
        db_index=True,
        help_text="Stripe credential mode (test or live)",
    )
    processor_customer_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Stripe Customer ID (cus_xxx)",
    )
    processor_checkout_session_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Stripe Checkout Session ID (cs_xxx)",
    )
    processor_subscription_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Stripe Subscription ID (sub_xxx), recurring pledges only",
    )
    processor_charge_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Stripe PaymentIntent ID (pi_xxx), one-time pledges only",
    )

    payer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="pledges",
        help_text="Internal user who made the pledge",
    )
    payer_email = models.EmailField(
        null=True,
        blank=True,
        help_text="Email captured at checkout",
    )
    payer_name = models.CharField(
        max_length=255,
        blank=True,
        help_text="Display name captured at checkout",
    )

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Additional pledge metadata",
    )

    objects = PledgeQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Pledge"
        verbose_name_plural = "Pledges"
        indexes = [
            models.Index(
                fields=["status", "processor_mode", "created_at"],
                name="pledge_status_mode_created_idx",
            ),
            models.Index(
                fields=["processor_customer_id", "created_at"],
                name="pledge_customer_created_idx",
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0),
                name="pledge_amount_positive",
            ),
            models.CheckConstraint(
                condition=(
                    models.Q(
                        kind=PledgeKind.ONE_TIME,
                        processor_subscription_id__isnull=True,
                    )
                    | models.Q(
                        kind=PledgeKind.RECURRING,
                        processor_charge_id__isnull=True,
                    )
                ),
                name="pledge_identifier_matches_kind",
            ),
            models.CheckConstraint(
                condition=(
                    models.Q(amount_charged__isnull=True)
                    | ~models.Q(status=PledgeStatus.PENDING)
                ),
                name="pledge_amount_charged_after_confirmation",
            ),
        ]

    def __str__(self) -> str:
        return f"Pledge {self.id} ({self.kind}, {self.status})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        # Remember the persisted mode so save() can refuse to change it.
        loaded = instance.__dict__
        instance._persisted_mode = loaded.get("processor_mode")
        instance._persisted_linked = any(
            loaded.get(name) for name in PROCESSOR_IDENTIFIER_FIELDS
        )
        return instance

    def save(self, *args, **kwargs):
        """
        Save with version auto-increment for optimistic locking.

        On update, atomically increments the version field to detect
        concurrent modifications, and refuses to change processor_mode
        once a processor identifier has been attached.
        """
        is_update = not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self._check_mode_unchanged()
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])
        self._persisted_mode = self.processor_mode
        self._persisted_linked = self.has_processor_identifier

    def clean(self):
        super().clean()
        if self.kind == PledgeKind.ONE_TIME and self.processor_subscription_id:
            raise ValidationError(
                {"processor_subscription_id": "One-time pledges cannot have a subscription."}
            )
        if self.kind == PledgeKind.RECURRING and self.processor_charge_id:
            raise ValidationError(
                {"processor_charge_id": "Recurring pledges cannot have a one-time charge."}
            )
        if not self._state.adding:
            self._check_mode_unchanged()

    def _check_mode_unchanged(self) -> None:
        persisted_mode = getattr(self, "_persisted_mode", None)
        if (
            getattr(self, "_persisted_linked", False)
            and persisted_mode
            and persisted_mode != self.processor_mode
        ):
            raise InvalidModeMismatch(
                "processor_mode cannot change once a processor identifier is attached",
                details={
                    "pledge_id": str(self.id),
                    "persisted_mode": persisted_mode,
                    "requested_mode": self.processor_mode,
                },
            )

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def has_processor_identifier(self) -> bool:
        return any(getattr(self, name) for name in PROCESSOR_IDENTIFIER_FIELDS)

    @property
    def is_recurring(self) -> bool:
        return self.kind == PledgeKind.RECURRING

    @property
    def is_terminal(self) -> bool:
        return self.status in (PledgeStatus.COMPLETED, PledgeStatus.CANCELLED)

    def age(self, now: datetime | None = None) -> timedelta:
        """Time elapsed since the pledge was created."""
        return (now or timezone.now()) - self.created_at

    def attach_processor_identifiers(
        self,
        customer_id: str | None = None,
        subscription_id: str | None = None,
        charge_id: str | None = None,
    ) -> list[str]:
        """
        Backfill processor identifiers discovered during reconciliation.

        Only empty fields are filled; identifiers captured at checkout are
        never overwritten. A subscription is only attached to recurring
        pledges and a charge only to one-time pledges.

        Returns:
            Names of the fields that were filled
        """
        updated = []
        if customer_id and not self.processor_customer_id:
            self.processor_customer_id = customer_id
            updated.append("processor_customer_id")
        if subscription_id and self.is_recurring and not self.processor_subscription_id:
            self.processor_subscription_id = subscription_id
            updated.append("processor_subscription_id")
        if charge_id and not self.is_recurring and not self.processor_charge_id:
            self.processor_charge_id = charge_id
            updated.append("processor_charge_id")
        return updated

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=PledgeStatus.PENDING,
        target=PledgeStatus.ACTIVE,
    )
    def activate(self, amount_charged: Decimal, started_at: datetime | None = None):
        """
        Processor reports an active subscription.

        Transition: PENDING -> ACTIVE
        """
        self.amount_charged = amount_charged
        self.started_at = started_at or timezone.now()

    @transition(
        field=status,
        source=PledgeStatus.PENDING,
        target=PledgeStatus.COMPLETED,
    )
    def complete(self, amount_charged: Decimal, started_at: datetime | None = None):
        """
        Processor reports a succeeded one-time charge.

        Transition: PENDING -> COMPLETED
        """
        self.amount_charged = amount_charged
        self.started_at = started_at or timezone.now()

    @transition(
        field=status,
        source=[PledgeStatus.PENDING, PledgeStatus.ACTIVE],
        target=PledgeStatus.CANCELLED,
    )
    def cancel(self, reason: str = CancellationReason.PROCESSOR_CANCELLED):
        """
        Processor reports the subscription or checkout cancelled.

        Transition: PENDING/ACTIVE -> CANCELLED
        """
        self.cancelled_at = timezone.now()
        self.cancellation_reason = reason

    @transition(
        field=status,
        source=PledgeStatus.PENDING,
        target=PledgeStatus.CANCELLED,
    )
    def auto_cancel(self):
        """
        No processor record after the stale threshold: abandoned checkout.

        Transition: PENDING -> CANCELLED
        """
        self.cancelled_at = timezone.now()
        self.cancellation_reason = CancellationReason.ABANDONED
