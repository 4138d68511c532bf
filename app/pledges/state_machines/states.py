"""
State enums for pledge and reconciliation models.

This module defines the enums used by pledge models with django-fsm.
These are Django TextChoices for database storage and admin integration.

State Machines Overview:

Pledge States:
    pending → active (recurring pledge confirmed by the processor)
    pending → completed (one-time pledge charged)
    pending → cancelled (processor cancellation or abandoned checkout)
    active → cancelled (processor-reported termination)

ReconciliationRun States:
    running → completed | partial | failed

PledgeReceipt States:
    pending → sending → sent
    pending → sending → failed → sending (manual resend)
"""

from django.db import models


class PledgeStatus(models.TextChoices):
    """
    States for the Pledge model lifecycle.

    Terminal states: COMPLETED, CANCELLED
    Status never moves back to PENDING.

    State Flow (Recurring):
        PENDING → ACTIVE → CANCELLED

    State Flow (One-time):
        PENDING → COMPLETED

    Abandonment Flow:
        PENDING → CANCELLED
    """

    PENDING = "pending", "Pending"
    ACTIVE = "active", "Active"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"


class PledgeKind(models.TextChoices):
    """Whether a pledge is charged once or on a subscription."""

    ONE_TIME = "one_time", "One-time"
    RECURRING = "recurring", "Recurring"


class ProcessorMode(models.TextChoices):
    """
    Processor credential mode.

    Pledges created with test keys must only ever be looked up with test
    keys, and live pledges with live keys.
    """

    TEST = "test", "Test"
    LIVE = "live", "Live"


class CancellationReason(models.TextChoices):
    """Why a pledge was cancelled."""

    PROCESSOR_CANCELLED = "processor_cancelled", "Cancelled at processor"
    ABANDONED = "abandoned", "Abandoned checkout"


class LookupStrategy(models.TextChoices):
    """Processor lookup used to reach a reconciliation decision."""

    SESSION = "session", "Checkout session"
    SUBSCRIPTION_ID = "subscription_id", "Subscription ID"
    CUSTOMER_SEARCH = "customer_search", "Customer search"
    AGE_TIMEOUT = "age_timeout", "Age timeout"
    NONE = "none", "None"


class ReconciliationAction(models.TextChoices):
    """Action recorded for a pledge in a reconciliation outcome."""

    ACTIVATED = "activated", "Activated"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"
    AUTO_CANCELLED = "auto_cancelled", "Auto-cancelled"
    SKIPPED = "skipped", "Skipped"
    ERROR = "error", "Error"


class ReconciliationRunStatus(models.TextChoices):
    """
    Status of a reconciliation sweep.

    PARTIAL means the sweep stopped at its deadline; the remaining
    pledges are still pending and are picked up by the next sweep.
    """

    RUNNING = "running", "Running"
    COMPLETED = "completed", "Completed"
    PARTIAL = "partial", "Partial"
    FAILED = "failed", "Failed"


class SweepTrigger(models.TextChoices):
    """How a sweep was started."""

    SCHEDULED = "scheduled", "Scheduled"
    MANUAL = "manual", "Manual"


class ReceiptStatus(models.TextChoices):
    """Delivery status of a receipt intent."""

    PENDING = "pending", "Pending"
    SENDING = "sending", "Sending"
    SENT = "sent", "Sent"
    FAILED = "failed", "Failed"
