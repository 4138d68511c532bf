"""
Celery configuration for the reconciliation service.

Celery runs the scheduled reconciliation sweep and the receipt retry task.
Redis is both the message broker and result backend; the beat schedule is
stored in the database by django-celery-beat (see
pledges/migrations/0002_add_reconciliation_schedule.py).

Usage:
    celery -A config worker -l info
    celery -A config beat -l info
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Tasks live in pledges.workers rather than a tasks.py module
app.autodiscover_tasks(["pledges.workers"], related_name="reconciliation_worker")
