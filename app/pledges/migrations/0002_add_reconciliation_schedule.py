"""
Add celery-beat schedules for pledge reconciliation.

Creates two periodic tasks:
- run_scheduled_sweep every 15 minutes, reconciling pending pledges
- retry_failed_receipts every hour, re-sending undelivered receipts
"""

from django.db import migrations

SWEEP_TASK_NAME = "Reconcile Pending Pledges"
RECEIPT_TASK_NAME = "Retry Failed Pledge Receipts"


def create_periodic_tasks(apps, schema_editor):
    """Create the periodic tasks for reconciliation and receipt retries."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    every_15_minutes, _ = IntervalSchedule.objects.get_or_create(
        every=15,
        period="minutes",
    )
    PeriodicTask.objects.get_or_create(
        name=SWEEP_TASK_NAME,
        defaults={
            "task": "pledges.workers.reconciliation_worker.run_scheduled_sweep",
            "interval": every_15_minutes,
            "enabled": True,
            "description": (
                "Reconciles pending pledges against Stripe. Activates, completes "
                "or cancels pledges whose webhook was missed and auto-cancels "
                "abandoned checkouts."
            ),
        },
    )

    every_hour, _ = IntervalSchedule.objects.get_or_create(
        every=1,
        period="hours",
    )
    PeriodicTask.objects.get_or_create(
        name=RECEIPT_TASK_NAME,
        defaults={
            "task": "pledges.workers.reconciliation_worker.retry_failed_receipts",
            "interval": every_hour,
            "enabled": True,
            "description": "Re-sends pledge receipts that failed or were never sent.",
        },
    )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[SWEEP_TASK_NAME, RECEIPT_TASK_NAME],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("pledges", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
