"""
Status transition rules for reconciliation.

Pure decision logic: given the local status, the processor's resolution
and the pledge age, decide the new local status and side effects. Nothing
here touches the database or the processor.

Decision Table:
    any      + younger than grace window     -> unchanged, skipped
    pending  + ACTIVE                        -> active, receipt
    pending  + SUCCEEDED                     -> completed, receipt
    pending  + CANCELLED                     -> cancelled
    pending  + INCONCLUSIVE, older than stale threshold
                                             -> cancelled (auto), optional notice
    pending  + INCONCLUSIVE, younger         -> unchanged, skipped
    active   + CANCELLED                     -> cancelled
    anything else                            -> unchanged, skipped

An inconclusive resolution caused by an unreachable processor is an error,
never an auto-cancel.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from pledges.services.identifier_resolver import ProcessorSignal, Resolution
from pledges.state_machines import PledgeStatus, ReconciliationAction

if TYPE_CHECKING:
    from pledges.services.config import ReconciliationConfig


# Actions that move the pledge to a new status
TRANSITION_ACTIONS = frozenset(
    {
        ReconciliationAction.ACTIVATED,
        ReconciliationAction.COMPLETED,
        ReconciliationAction.CANCELLED,
        ReconciliationAction.AUTO_CANCELLED,
    }
)


@dataclass(frozen=True)
class Decision:
    """
    What reconciliation should do with a pledge.

    Attributes:
        new_status: Local status after the decision
        action: ReconciliationAction recorded in the outcome
        issue_receipt: Record a receipt intent with the transition
        notify_payer: Send the auto-cancel notice
        reason: Human-readable explanation for the audit log
    """

    new_status: str
    action: str
    issue_receipt: bool = False
    notify_payer: bool = False
    reason: str = ""

    @property
    def is_transition(self) -> bool:
        return self.action in TRANSITION_ACTIONS


def within_grace_window(age: timedelta, config: ReconciliationConfig) -> bool:
    """Whether the webhook should still be given time to arrive."""
    return age < config.grace_window


def decide(
    local_status: str,
    resolution: Resolution | None,
    age: timedelta,
    config: ReconciliationConfig,
) -> Decision:
    """
    Decide the reconciliation action for a pledge.

    Args:
        local_status: Current PledgeStatus
        resolution: Result of identifier resolution (None if not resolved)
        age: Time since pledge creation
        config: Grace window and stale threshold

    Returns:
        Decision; action SKIPPED leaves the pledge untouched
    """
    if within_grace_window(age, config):
        return Decision(
            new_status=local_status,
            action=ReconciliationAction.SKIPPED,
            reason="Within grace window; waiting for webhook",
        )

    signal = resolution.signal if resolution else ProcessorSignal.INCONCLUSIVE

    if local_status == PledgeStatus.PENDING:
        if signal == ProcessorSignal.ACTIVE:
            return Decision(
                new_status=PledgeStatus.ACTIVE,
                action=ReconciliationAction.ACTIVATED,
                issue_receipt=True,
                reason="Processor reports an active subscription",
            )
        if signal == ProcessorSignal.SUCCEEDED:
            return Decision(
                new_status=PledgeStatus.COMPLETED,
                action=ReconciliationAction.COMPLETED,
                issue_receipt=True,
                reason="Processor reports a succeeded charge",
            )
        if signal == ProcessorSignal.CANCELLED:
            return Decision(
                new_status=PledgeStatus.CANCELLED,
                action=ReconciliationAction.CANCELLED,
                reason="Processor reports the pledge cancelled",
            )

        if resolution is not None and resolution.processor_failed:
            return Decision(
                new_status=local_status,
                action=ReconciliationAction.ERROR,
                reason="Processor unavailable or record unusable; pledge left pending",
            )
        if age >= config.stale_threshold:
            return Decision(
                new_status=PledgeStatus.CANCELLED,
                action=ReconciliationAction.AUTO_CANCELLED,
                notify_payer=config.notify_on_auto_cancel,
                reason="No processor record after stale threshold",
            )
        return Decision(
            new_status=local_status,
            action=ReconciliationAction.SKIPPED,
            reason="Processor status inconclusive",
        )

    if local_status == PledgeStatus.ACTIVE and signal == ProcessorSignal.CANCELLED:
        return Decision(
            new_status=PledgeStatus.CANCELLED,
            action=ReconciliationAction.CANCELLED,
            reason="Processor reports the subscription cancelled",
        )

    return Decision(
        new_status=local_status,
        action=ReconciliationAction.SKIPPED,
        reason="No change required",
    )
