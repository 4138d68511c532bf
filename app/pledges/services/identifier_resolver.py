"""
Identifier resolution: find a pledge's processor record.

Pledges carry whatever processor identifiers the checkout flow managed to
capture. This module tries lookup strategies in a fixed order and returns
the first definitive processor status it finds.

Strategy Registry:
    Strategies are plain functions registered with @register_strategy and
    run in registration order. Each takes (pledge, client, config) and
    returns a Resolution, or None when it does not apply to the pledge.

    1. session: checkout session ID -> session with linked object
    2. subscription_id: recurring pledge with a subscription ID
    3. customer_search: customer ID + amount -> search around created_at

    A success signal must fit the pledge kind: recurring pledges activate on
    a subscription, one-time pledges complete on a succeeded payment. A
    record of the other kind is recorded as a failure, not applied.

Usage:
    from pledges.services.identifier_resolver import resolve

    resolution = resolve(pledge, StripeAdapter, config)
    if resolution.is_definitive:
        print(resolution.signal, resolution.processor_object_id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Callable

from pledges.adapters.stripe_adapter import (
    OBJECT_CHECKOUT_SESSION,
    OBJECT_SUBSCRIPTION,
)
from pledges.exceptions import (
    ProcessorKindMismatch,
    ProcessorUnavailable,
    StripeInvalidRequestError,
)
from pledges.state_machines import LookupStrategy, PledgeKind

if TYPE_CHECKING:
    from pledges.adapters.stripe_adapter import ProcessorObject
    from pledges.models import Pledge
    from pledges.services.config import ReconciliationConfig


logger = logging.getLogger(__name__)


# =============================================================================
# Data Types
# =============================================================================


class ProcessorSignal(str, Enum):
    """What the processor says about a pledge, independent of object type."""

    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    INCONCLUSIVE = "inconclusive"


ACTIVE_STATUSES = frozenset({"active", "trialing", "past_due"})
SUCCEEDED_STATUSES = frozenset({"succeeded"})
CANCELLED_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired"})


@dataclass
class Resolution:
    """
    Result of resolving a pledge against the processor.

    Attributes:
        signal: Normalized processor signal
        strategy: LookupStrategy that produced this result
        processor_object_id: Object the signal came from
        processor_status: Raw processor status of that object
        customer_id / subscription_id / charge_id: Identifiers discovered
            during the lookup, backfilled onto the pledge on transition
        amount_charged: Amount the processor settled, in major units
        started_at: When the processor object was created or started
        failures: Processor errors raised by strategies that were tried, and
            records that did not fit the pledge kind
    """

    signal: ProcessorSignal
    strategy: str = LookupStrategy.NONE
    processor_object_id: str = ""
    processor_status: str = ""
    customer_id: str | None = None
    subscription_id: str | None = None
    charge_id: str | None = None
    amount_charged: Decimal | None = None
    started_at: datetime | None = None
    failures: list[ProcessorUnavailable | ProcessorKindMismatch] = field(
        default_factory=list
    )

    @classmethod
    def inconclusive(cls, strategy: str = LookupStrategy.NONE) -> Resolution:
        return cls(signal=ProcessorSignal.INCONCLUSIVE, strategy=strategy)

    @property
    def is_definitive(self) -> bool:
        return self.signal != ProcessorSignal.INCONCLUSIVE

    @property
    def processor_failed(self) -> bool:
        """Whether any strategy failed or found a record it could not apply."""
        return bool(self.failures)


def classify_status(
    processor_status: str | None,
    object_type: str | None = None,
    has_linked: bool = False,
) -> ProcessorSignal:
    """
    Map a processor status string to a ProcessorSignal.

    An expired checkout session with no subscription or payment intent
    attached means the payer never finished checkout.
    """
    if processor_status in ACTIVE_STATUSES:
        return ProcessorSignal.ACTIVE
    if processor_status in SUCCEEDED_STATUSES:
        return ProcessorSignal.SUCCEEDED
    if processor_status in CANCELLED_STATUSES:
        return ProcessorSignal.CANCELLED
    if (
        object_type == OBJECT_CHECKOUT_SESSION
        and processor_status == "expired"
        and not has_linked
    ):
        return ProcessorSignal.CANCELLED
    return ProcessorSignal.INCONCLUSIVE


# Success signals each pledge kind may act on
KIND_SIGNALS = {
    PledgeKind.RECURRING: ProcessorSignal.ACTIVE,
    PledgeKind.ONE_TIME: ProcessorSignal.SUCCEEDED,
}


def check_kind(pledge: Pledge, resolution: Resolution) -> None:
    """
    Raise ProcessorKindMismatch if a success signal does not fit the pledge.

    Cancellations apply to either kind.
    """
    if resolution.signal not in (ProcessorSignal.ACTIVE, ProcessorSignal.SUCCEEDED):
        return
    expected = KIND_SIGNALS.get(pledge.kind)
    if resolution.signal != expected:
        raise ProcessorKindMismatch(
            f"{pledge.kind} pledge resolved to a {resolution.signal.value} "
            f"record ({resolution.processor_object_id})",
            details={
                "pledge_id": str(pledge.id),
                "kind": pledge.kind,
                "signal": resolution.signal.value,
                "processor_object_id": resolution.processor_object_id,
            },
        )


def _epoch_to_datetime(epoch: int | None) -> datetime | None:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=dt_timezone.utc)


def _resolution_from_object(
    obj: ProcessorObject,
    strategy: str,
    customer_id: str | None = None,
) -> Resolution:
    """Build a Resolution from a subscription or payment intent."""
    is_subscription = obj.object_type == OBJECT_SUBSCRIPTION
    started_epoch = obj.created_at_epoch
    if is_subscription:
        started_epoch = obj.raw_response.get("start_date") or started_epoch

    return Resolution(
        signal=classify_status(obj.processor_status, obj.object_type),
        strategy=strategy,
        processor_object_id=obj.object_id or "",
        processor_status=obj.processor_status or "",
        customer_id=obj.customer_id or customer_id,
        subscription_id=obj.object_id if is_subscription else None,
        charge_id=None if is_subscription else obj.object_id,
        amount_charged=obj.amount,
        started_at=_epoch_to_datetime(started_epoch),
    )


# =============================================================================
# Strategy Registry
# =============================================================================


Strategy = Callable[["Pledge", type, "ReconciliationConfig"], "Resolution | None"]

# Ordered (name, function) pairs; first definitive result wins
STRATEGIES: list[tuple[str, Strategy]] = []


def register_strategy(name: str) -> Callable[[Strategy], Strategy]:
    """
    Decorator to register a lookup strategy.

    Usage:
        @register_strategy(LookupStrategy.SESSION)
        def lookup_by_session(pledge, client, config) -> Resolution | None:
            ...
    """

    def decorator(func: Strategy) -> Strategy:
        STRATEGIES.append((name, func))
        logger.debug(f"Registered lookup strategy {name}")
        return func

    return decorator


@register_strategy(LookupStrategy.SESSION)
def lookup_by_session(pledge, client, config) -> Resolution | None:
    session_id = pledge.processor_checkout_session_id
    if not session_id:
        return None

    session = client.get_checkout_session(
        session_id,
        pledge.processor_mode,
        trace_id=f"reconciliation:{pledge.id}",
    )
    if session is None:
        return Resolution.inconclusive(LookupStrategy.SESSION)

    linked = session.linked
    if (
        linked is None
        and session.linked_id
        and session.checkout_mode == "subscription"
    ):
        # Subscription was not expanded; fetch it directly
        linked = client.get_subscription(
            session.linked_id,
            pledge.processor_mode,
            trace_id=f"reconciliation:{pledge.id}",
        )

    if linked is not None:
        resolution = _resolution_from_object(
            linked,
            LookupStrategy.SESSION,
            customer_id=session.customer_id,
        )
        if resolution.amount_charged is None:
            resolution.amount_charged = session.amount
        return resolution

    return Resolution(
        signal=classify_status(
            session.processor_status,
            session.object_type,
            has_linked=bool(session.linked_id),
        ),
        strategy=LookupStrategy.SESSION,
        processor_object_id=session.object_id or "",
        processor_status=session.processor_status or "",
        customer_id=session.customer_id,
        amount_charged=session.amount,
    )


@register_strategy(LookupStrategy.SUBSCRIPTION_ID)
def lookup_by_subscription_id(pledge, client, config) -> Resolution | None:
    if pledge.kind != PledgeKind.RECURRING or not pledge.processor_subscription_id:
        return None

    subscription = client.get_subscription(
        pledge.processor_subscription_id,
        pledge.processor_mode,
        trace_id=f"reconciliation:{pledge.id}",
    )
    if subscription is None:
        return Resolution.inconclusive(LookupStrategy.SUBSCRIPTION_ID)
    return _resolution_from_object(subscription, LookupStrategy.SUBSCRIPTION_ID)


@register_strategy(LookupStrategy.CUSTOMER_SEARCH)
def lookup_by_customer_search(pledge, client, config) -> Resolution | None:
    if not pledge.processor_customer_id or not pledge.amount:
        return None

    match = client.search_by_customer_and_window(
        customer_id=pledge.processor_customer_id,
        amount=pledge.amount,
        window_start=pledge.created_at - config.search_window,
        window_end=pledge.created_at + config.search_window,
        kind=pledge.kind,
        mode=pledge.processor_mode,
        tolerance=config.amount_tolerance,
        trace_id=f"reconciliation:{pledge.id}",
    )
    if match is None:
        return Resolution.inconclusive(LookupStrategy.CUSTOMER_SEARCH)
    return _resolution_from_object(
        match,
        LookupStrategy.CUSTOMER_SEARCH,
        customer_id=pledge.processor_customer_id,
    )


# =============================================================================
# Resolver
# =============================================================================


def resolve(pledge: Pledge, client, config: ReconciliationConfig) -> Resolution:
    """
    Run the registered strategies until one is definitive.

    A strategy that cannot reach the processor counts as inconclusive and
    the next strategy is tried; the failure is kept on the returned
    Resolution so callers never mistake an outage for "no record".
    A definitive record that does not fit the pledge kind is treated the
    same way. InvalidModeMismatch is not caught.

    Args:
        pledge: Pending pledge to resolve
        client: Processor client (StripeAdapter or a test double)
        config: Reconciliation thresholds

    Returns:
        The first definitive Resolution, else the last inconclusive one
        (strategy NONE when no strategy applied)
    """
    failures: list[ProcessorUnavailable] = []
    last: Resolution | None = None

    for name, strategy in STRATEGIES:
        try:
            result = strategy(pledge, client, config)
        except ProcessorUnavailable as e:
            logger.warning(
                "Processor lookup failed, trying next strategy",
                extra={
                    "pledge_id": str(pledge.id),
                    "strategy": name,
                    "error": str(e),
                },
            )
            failures.append(e)
            last = Resolution.inconclusive(name)
            continue
        except StripeInvalidRequestError as e:
            logger.warning(
                "Processor rejected lookup, trying next strategy",
                extra={
                    "pledge_id": str(pledge.id),
                    "strategy": name,
                    "error": str(e),
                },
            )
            last = Resolution.inconclusive(name)
            continue

        if result is None:
            continue

        if result.is_definitive:
            try:
                check_kind(pledge, result)
            except ProcessorKindMismatch as e:
                logger.warning(
                    "Processor record does not fit pledge kind, trying next strategy",
                    extra={
                        "pledge_id": str(pledge.id),
                        "strategy": name,
                        "error": str(e),
                    },
                )
                failures.append(e)
                last = Resolution(
                    signal=ProcessorSignal.INCONCLUSIVE,
                    strategy=name,
                    processor_object_id=result.processor_object_id,
                    processor_status=result.processor_status,
                )
                continue

            result.failures = failures
            logger.debug(
                "Pledge resolved",
                extra={
                    "pledge_id": str(pledge.id),
                    "strategy": name,
                    "signal": result.signal.value,
                    "processor_object_id": result.processor_object_id,
                },
            )
            return result
        last = result

    resolution = last or Resolution.inconclusive()
    resolution.failures = failures
    return resolution
