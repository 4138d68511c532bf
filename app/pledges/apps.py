"""
Pledges app configuration.

This app keeps local pledge records consistent with the payment processor:
- Pledge store with a forward-only state machine
- Stripe lookups by checkout session, subscription and customer search
- Scheduled and on-demand reconciliation sweeps with an audit trail
"""

from django.apps import AppConfig


class PledgesConfig(AppConfig):
    """Configuration for the pledges application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "pledges"
    verbose_name = "Pledges"
