"""
Stripe API adapter for read-only reconciliation lookups.

This module provides the StripeAdapter class which encapsulates every Stripe
call made by the reconciliation engine. All calls go through this adapter to
ensure consistent mode isolation, timeouts, error translation and logging.

Features:
- Mode-specific API keys passed per request (test and live never mix)
- Fail-fast timeout on every call, no SDK-level retries
- Automatic error translation to domain exceptions
- Structured logging with timing metrics
- Normalized ProcessorObject results independent of the Stripe object type

Configuration (via settings):
- STRIPE_SECRET_KEY_TEST: Test mode secret key (sk_test_...)
- STRIPE_SECRET_KEY_LIVE: Live mode secret key (sk_live_...)
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 8)

Usage:
    from pledges.adapters import StripeAdapter

    session = StripeAdapter.get_checkout_session("cs_test_123", mode="test")
    if session and session.linked:
        print(session.linked.processor_status)

    match = StripeAdapter.search_by_customer_and_window(
        customer_id="cus_123",
        amount=Decimal("25.00"),
        window_start=created_at - timedelta(hours=1),
        window_end=created_at + timedelta(hours=1),
        kind="one_time",
        mode="live",
        tolerance=Decimal("1.00"),
    )
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import stripe
from django.conf import settings

from pledges.exceptions import (
    InvalidModeMismatch,
    ProcessorNotConfigured,
    StripeAPIUnavailableError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
)
from pledges.state_machines import PledgeKind, ProcessorMode

if TYPE_CHECKING:
    from datetime import datetime


# =============================================================================
# Constants
# =============================================================================

OBJECT_CHECKOUT_SESSION = "checkout.session"
OBJECT_SUBSCRIPTION = "subscription"
OBJECT_PAYMENT_INTENT = "payment_intent"

# Customer search page size; a customer rarely has more objects in a 2h window
SEARCH_PAGE_SIZE = 10

# Metadata amounts are written by our checkout flow, so they match to the cent
METADATA_AMOUNT_TOLERANCE = Decimal("0.01")


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class ProcessorObject:
    """
    Normalized view of a Stripe checkout session, subscription or payment intent.

    Attributes:
        object_id: Stripe ID (cs_xxx, sub_xxx, pi_xxx)
        object_type: One of the OBJECT_* constants
        processor_status: Stripe's status string for the object
        customer_id: Stripe Customer ID if known
        amount_minor_units: Amount in cents (session total, subscription
            price times quantity, or intent amount)
        created_at_epoch: Stripe 'created' timestamp
        livemode: Whether Stripe reports the object as live
        metadata: Object metadata
        checkout_mode: For sessions, "subscription" or "payment"
        linked: For sessions, the expanded subscription or payment intent
        linked_id: For sessions, the ID of the linked object
        raw_response: The full Stripe payload
    """

    object_id: str
    object_type: str
    processor_status: str | None
    customer_id: str | None = None
    amount_minor_units: int | None = None
    created_at_epoch: int | None = None
    livemode: bool | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    checkout_mode: str | None = None
    linked: ProcessorObject | None = None
    linked_id: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def amount(self) -> Decimal | None:
        """Amount in major currency units."""
        if self.amount_minor_units is None:
            return None
        return Decimal(self.amount_minor_units) / Decimal(100)

    @property
    def metadata_amount(self) -> Decimal | None:
        """Pledge amount our checkout flow stored in metadata, if any."""
        value = self.metadata.get("amount")
        if value in (None, ""):
            return None
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None


# =============================================================================
# Helpers
# =============================================================================


def _as_dict(obj: Any) -> dict[str, Any]:
    """Convert a StripeObject (or plain dict) to a plain dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    return obj.to_dict()


def _first_item_amount(subscription: dict[str, Any]) -> int | None:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    item = items[0]
    unit_amount = (item.get("price") or {}).get("unit_amount")
    if unit_amount is None:
        return None
    return unit_amount * (item.get("quantity") or 1)


def select_best_match(
    candidates: list[ProcessorObject],
    amount: Decimal,
    target_epoch: int,
    tolerance: Decimal,
) -> ProcessorObject | None:
    """
    Pick the processor object that best matches a pledge.

    A candidate whose metadata.amount equals the pledged amount is a metadata
    match. Any other candidate, including one whose metadata.amount differs,
    matches when its processor amount is strictly less than `tolerance` away
    from the pledged amount (processor fees can inflate the charge). Metadata
    matches win over tolerance matches; ties are broken by the closest
    creation time.

    Args:
        candidates: Objects found in the search window
        amount: Pledged amount in major units
        target_epoch: Pledge creation time as a Unix timestamp
        tolerance: Allowed absolute difference for tolerance matches

    Returns:
        The best candidate or None if nothing matches
    """
    exact: list[ProcessorObject] = []
    approximate: list[ProcessorObject] = []

    for candidate in candidates:
        metadata_amount = candidate.metadata_amount
        if (
            metadata_amount is not None
            and abs(metadata_amount - amount) < METADATA_AMOUNT_TOLERANCE
        ):
            exact.append(candidate)
            continue
        if candidate.amount is not None and abs(candidate.amount - amount) < tolerance:
            approximate.append(candidate)

    pool = exact or approximate
    if not pool:
        return None
    return min(
        pool,
        key=lambda c: abs((c.created_at_epoch or 0) - target_epoch),
    )


# =============================================================================
# Stripe Adapter
# =============================================================================


class StripeAdapter:
    """
    Adapter for read-only Stripe lookups.

    All methods are class methods - no instance state is maintained.
    Thread-safe: the API key is passed per request rather than set globally,
    so worker threads reconciling test and live pledges never share
    credentials.

    Lookups return None when Stripe reports the object missing, and raise
    ProcessorUnavailable subclasses when Stripe cannot be reached.
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        """Configure the HTTP client timeout and disable SDK retries."""
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 8)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = 0

    @staticmethod
    def get_api_key(mode: str) -> str:
        """
        Return the secret key for a processor mode.

        Raises:
            ProcessorNotConfigured: No key configured for the mode
        """
        keys = {
            ProcessorMode.TEST: getattr(settings, "STRIPE_SECRET_KEY_TEST", ""),
            ProcessorMode.LIVE: getattr(settings, "STRIPE_SECRET_KEY_LIVE", ""),
        }
        api_key = keys.get(mode)
        if not api_key:
            raise ProcessorNotConfigured(
                f"No Stripe secret key configured for {mode} mode",
                stripe_code="not_configured",
                details={"mode": mode},
            )
        return api_key

    @classmethod
    def is_mode_configured(cls, mode: str) -> bool:
        try:
            cls.get_api_key(mode)
        except ProcessorNotConfigured:
            return False
        return True

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Get logger for this adapter."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # Lookups
    # =========================================================================

    @classmethod
    def get_checkout_session(
        cls,
        session_id: str,
        mode: str,
        trace_id: str | None = None,
    ) -> ProcessorObject | None:
        """
        Retrieve a Checkout Session with its subscription or payment intent.

        Args:
            session_id: Stripe Checkout Session ID (cs_xxx)
            mode: Processor mode of the pledge
            trace_id: Optional trace ID for log correlation

        Returns:
            ProcessorObject for the session, with `linked` set when Stripe
            expanded the subscription or payment intent, or None if the
            session does not exist

        Raises:
            ProcessorUnavailable: Stripe unreachable or timed out
            InvalidModeMismatch: Session belongs to the other mode
        """
        log_context = {
            "operation": "get_checkout_session",
            "session_id": session_id,
            "mode": mode,
            "trace_id": trace_id,
        }
        session = cls._call(
            log_context,
            lambda api_key: stripe.checkout.Session.retrieve(
                session_id,
                api_key=api_key,
                expand=["subscription", "payment_intent"],
            ),
            mode,
        )
        if session is None:
            return None

        result = cls._normalize_session(_as_dict(session))
        cls._check_livemode(result, mode)
        return result

    @classmethod
    def get_subscription(
        cls,
        subscription_id: str,
        mode: str,
        trace_id: str | None = None,
    ) -> ProcessorObject | None:
        """
        Retrieve a Subscription by ID.

        Returns:
            ProcessorObject or None if the subscription does not exist

        Raises:
            ProcessorUnavailable: Stripe unreachable or timed out
            InvalidModeMismatch: Subscription belongs to the other mode
        """
        log_context = {
            "operation": "get_subscription",
            "subscription_id": subscription_id,
            "mode": mode,
            "trace_id": trace_id,
        }
        subscription = cls._call(
            log_context,
            lambda api_key: stripe.Subscription.retrieve(
                subscription_id,
                api_key=api_key,
            ),
            mode,
        )
        if subscription is None:
            return None

        result = cls._normalize_subscription(_as_dict(subscription))
        cls._check_livemode(result, mode)
        return result

    @classmethod
    def search_by_customer_and_window(
        cls,
        customer_id: str,
        amount: Decimal,
        window_start: datetime,
        window_end: datetime,
        kind: str,
        mode: str,
        tolerance: Decimal,
        trace_id: str | None = None,
    ) -> ProcessorObject | None:
        """
        Find the customer's subscription or charge matching a pledge.

        Lists the customer's subscriptions (recurring) or payment intents
        (one-time) created inside the window and picks the best match with
        select_best_match(). Only succeeded payment intents are considered.

        Args:
            customer_id: Stripe Customer ID (cus_xxx)
            amount: Pledged amount in major units
            window_start: Earliest creation time to consider
            window_end: Latest creation time to consider
            kind: PledgeKind value
            mode: Processor mode of the pledge
            tolerance: Allowed amount difference for fee-inflated charges
            trace_id: Optional trace ID for log correlation

        Returns:
            Matching ProcessorObject or None

        Raises:
            ProcessorUnavailable: Stripe unreachable or timed out
            InvalidModeMismatch: A result belongs to the other mode
        """
        start_epoch = int(window_start.timestamp())
        end_epoch = int(window_end.timestamp())
        created = {"gte": start_epoch, "lte": end_epoch}
        recurring = kind == PledgeKind.RECURRING

        log_context = {
            "operation": "search_by_customer_and_window",
            "customer_id": customer_id,
            "kind": kind,
            "mode": mode,
            "window_start": start_epoch,
            "window_end": end_epoch,
            "trace_id": trace_id,
        }

        if recurring:
            listing = cls._call(
                log_context,
                lambda api_key: stripe.Subscription.list(
                    customer=customer_id,
                    created=created,
                    status="all",
                    limit=SEARCH_PAGE_SIZE,
                    api_key=api_key,
                ),
                mode,
            )
        else:
            listing = cls._call(
                log_context,
                lambda api_key: stripe.PaymentIntent.list(
                    customer=customer_id,
                    created=created,
                    limit=SEARCH_PAGE_SIZE,
                    api_key=api_key,
                ),
                mode,
            )
        if listing is None:
            return None

        candidates = []
        for item in listing.data:
            data = _as_dict(item)
            if recurring:
                candidate = cls._normalize_subscription(data)
            else:
                candidate = cls._normalize_payment_intent(data)
                if candidate.processor_status != "succeeded":
                    continue
            cls._check_livemode(candidate, mode)
            candidates.append(candidate)

        target_epoch = (start_epoch + end_epoch) // 2
        match = select_best_match(candidates, amount, target_epoch, tolerance)

        cls.get_logger().info(
            "Customer search finished",
            extra={
                **log_context,
                "candidates": len(candidates),
                "matched_id": match.object_id if match else None,
            },
        )
        return match

    # =========================================================================
    # Internal
    # =========================================================================

    @classmethod
    def _call(cls, log_context: dict[str, Any], request, mode: str):
        """
        Run one Stripe request with the mode's key, timing and error translation.

        Returns None when Stripe reports the resource missing.
        """
        api_key = cls.get_api_key(mode)
        cls._configure_stripe()
        logger = cls.get_logger()

        start_time = time.time()
        logger.debug("Starting Stripe operation", extra=log_context)

        try:
            response = request(api_key)
        except stripe.InvalidRequestError as e:
            duration_ms = (time.time() - start_time) * 1000
            if e.code == "resource_missing":
                logger.info(
                    "Stripe object not found",
                    extra={**log_context, "duration_ms": duration_ms},
                )
                return None
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.debug(
            "Stripe operation completed",
            extra={**log_context, "duration_ms": duration_ms},
        )
        return response

    @classmethod
    def _check_livemode(cls, obj: ProcessorObject, mode: str) -> None:
        if obj.livemode is None:
            return
        if obj.livemode != (mode == ProcessorMode.LIVE):
            cls.get_logger().error(
                "Stripe object mode does not match pledge mode",
                extra={
                    "object_id": obj.object_id,
                    "livemode": obj.livemode,
                    "mode": mode,
                },
            )
            raise InvalidModeMismatch(
                f"{obj.object_id} is {'live' if obj.livemode else 'test'} "
                f"but was looked up in {mode} mode",
                details={"object_id": obj.object_id, "mode": mode},
            )

    @staticmethod
    def _normalize_subscription(data: dict[str, Any]) -> ProcessorObject:
        return ProcessorObject(
            object_id=data.get("id"),
            object_type=OBJECT_SUBSCRIPTION,
            processor_status=data.get("status"),
            customer_id=data.get("customer"),
            amount_minor_units=_first_item_amount(data),
            created_at_epoch=data.get("created"),
            livemode=data.get("livemode"),
            metadata=dict(data.get("metadata") or {}),
            raw_response=data,
        )

    @staticmethod
    def _normalize_payment_intent(data: dict[str, Any]) -> ProcessorObject:
        amount = data.get("amount_received") or data.get("amount")
        return ProcessorObject(
            object_id=data.get("id"),
            object_type=OBJECT_PAYMENT_INTENT,
            processor_status=data.get("status"),
            customer_id=data.get("customer"),
            amount_minor_units=amount,
            created_at_epoch=data.get("created"),
            livemode=data.get("livemode"),
            metadata=dict(data.get("metadata") or {}),
            raw_response=data,
        )

    @classmethod
    def _normalize_session(cls, data: dict[str, Any]) -> ProcessorObject:
        checkout_mode = data.get("mode")
        if checkout_mode == "subscription":
            linked_raw = data.get("subscription")
            normalize = cls._normalize_subscription
        else:
            linked_raw = data.get("payment_intent")
            normalize = cls._normalize_payment_intent

        linked = None
        linked_id = None
        if isinstance(linked_raw, str):
            linked_id = linked_raw
        elif linked_raw:
            linked = normalize(_as_dict(linked_raw))
            linked_id = linked.object_id

        return ProcessorObject(
            object_id=data.get("id"),
            object_type=OBJECT_CHECKOUT_SESSION,
            processor_status=data.get("status"),
            customer_id=data.get("customer"),
            amount_minor_units=data.get("amount_total"),
            created_at_epoch=data.get("created"),
            livemode=data.get("livemode"),
            metadata=dict(data.get("metadata") or {}),
            checkout_mode=checkout_mode,
            linked=linked,
            linked_id=linked_id,
            raw_response=data,
        )

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to domain exceptions.

        Raises:
            StripeInvalidRequestError: Invalid request or credentials
            StripeRateLimitError: Rate limited
            StripeTimeoutError: No response within the timeout
            StripeAPIUnavailableError: Network error, 5xx or unknown failure
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.InvalidRequestError):
            logger.warning(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            raise StripeInvalidRequestError(str(error), stripe_code=error.code)

        elif isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise StripeRateLimitError(
                "Stripe rate limit exceeded",
                stripe_code="rate_limit",
            )

        elif isinstance(error, stripe.APIConnectionError):
            message = str(error).lower()
            if "timeout" in message or "timed out" in message:
                logger.warning("Stripe request timed out", extra=log_context)
                raise StripeTimeoutError(
                    "Stripe did not respond in time",
                    stripe_code="timeout",
                )
            logger.warning("Connection error to Stripe", extra=log_context)
            raise StripeAPIUnavailableError(
                "Could not connect to Stripe",
                stripe_code="api_connection_error",
            )

        elif isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Stripe service error",
                stripe_code="api_error",
            )

        elif isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise StripeInvalidRequestError(
                "Stripe authentication failed",
                stripe_code="authentication_error",
            )

        else:
            logger.error(
                f"Unexpected error from Stripe: {type(error).__name__}",
                extra=log_context,
                exc_info=True,
            )
            raise StripeAPIUnavailableError(
                f"Unexpected Stripe error: {error}",
                stripe_code="unknown_error",
            )


__all__ = [
    "OBJECT_CHECKOUT_SESSION",
    "OBJECT_PAYMENT_INTENT",
    "OBJECT_SUBSCRIPTION",
    "ProcessorObject",
    "StripeAdapter",
    "select_best_match",
]
