"""
Pledge adapters for external services.

All processor API calls made during reconciliation go through these
adapters to ensure consistent mode isolation, timeouts and logging.

Usage:
    from pledges.adapters import StripeAdapter

    subscription = StripeAdapter.get_subscription("sub_123", mode="live")
"""

from pledges.adapters.stripe_adapter import (
    OBJECT_CHECKOUT_SESSION,
    OBJECT_PAYMENT_INTENT,
    OBJECT_SUBSCRIPTION,
    ProcessorObject,
    StripeAdapter,
    select_best_match,
)

__all__ = [
    "OBJECT_CHECKOUT_SESSION",
    "OBJECT_PAYMENT_INTENT",
    "OBJECT_SUBSCRIPTION",
    "ProcessorObject",
    "StripeAdapter",
    "select_best_match",
]
