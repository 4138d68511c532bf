"""
Pledge persistence used by the reconciliation sweep.

All writes are single-row, taken under select_for_update and guarded by the
pledge's version column. If the webhook handler changed the pledge after
the sweep read it, the write fails with StaleRecordError and the sweep
leaves the pledge alone.

Usage:
    from pledges.services.pledge_store import PledgeStore, SweepFilter

    candidates = PledgeStore.list_pending_candidates(
        SweepFilter(mode="live", created_after=since),
        limit=500,
    )
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from django.db import DatabaseError

from django_fsm import TransitionNotAllowed

from core.services import BaseService

from pledges.exceptions import InvalidStateTransitionError, StoreWriteFailed
from pledges.locks import check_version
from pledges.models import Pledge, PledgeReceipt
from pledges.state_machines import ReconciliationAction

if TYPE_CHECKING:
    from typing import Any

    from pledges.services.identifier_resolver import Resolution
    from pledges.services.transition_rules import Decision


@dataclass(frozen=True)
class SweepFilter:
    """Which pending pledges a sweep considers."""

    mode: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None


class PledgeStore(BaseService):
    """
    Read and write pledges for reconciliation.

    Write methods raise:
        StaleRecordError: The pledge changed since it was read
        InvalidStateTransitionError: The transition is not allowed from
            the pledge's current status
        StoreWriteFailed: The database rejected the write
    """

    @classmethod
    def list_pending_candidates(
        cls,
        sweep_filter: SweepFilter | None = None,
        limit: int = 500,
    ) -> list[Pledge]:
        """Pending pledges matching the filter, oldest first, at most `limit`."""
        sweep_filter = sweep_filter or SweepFilter()
        queryset = (
            Pledge.objects.pending()
            .for_mode(sweep_filter.mode)
            .created_between(sweep_filter.created_after, sweep_filter.created_before)
            .select_related("payer")
            .order_by("created_at")
        )
        return list(queryset[:limit])

    @classmethod
    def update_pledge(cls, pledge_id: Any, expected_version: int, **fields) -> Pledge:
        """
        Update non-status fields of a pledge under optimistic locking.

        Status changes go through apply_transition(); the status field is
        protected by django-fsm.

        Returns:
            The updated pledge with its new version
        """
        try:
            with cls.atomic():
                pledge = check_version(Pledge, pledge_id, expected_version)
                for name, value in fields.items():
                    setattr(pledge, name, value)
                pledge.save()
        except DatabaseError as e:
            cls.get_logger().error(
                "Failed to update pledge",
                extra={"pledge_id": str(pledge_id), "fields": sorted(fields)},
                exc_info=True,
            )
            raise StoreWriteFailed(
                f"Failed to update pledge {pledge_id}: {e}",
                details={"pledge_id": str(pledge_id)},
            ) from e
        return pledge

    @classmethod
    def apply_transition(
        cls,
        pledge: Pledge,
        decision: Decision,
        resolution: Resolution | None = None,
    ) -> tuple[Pledge, PledgeReceipt | None]:
        """
        Apply a reconciliation decision to a pledge.

        In one transaction: lock the row at the version the decision was
        based on, backfill identifiers the resolver discovered, run the
        django-fsm transition and, when the decision issues a receipt,
        record the receipt intent. An existing intent for the same
        (pledge, target status) is reused.

        Returns:
            Tuple of (updated pledge, receipt intent or None)
        """
        try:
            with cls.atomic():
                # Version check doubles as the status re-verification: any
                # webhook update since the read bumped the version.
                locked = check_version(Pledge, pledge.pk, pledge.version)

                if resolution is not None:
                    locked.attach_processor_identifiers(
                        customer_id=resolution.customer_id,
                        subscription_id=resolution.subscription_id,
                        charge_id=resolution.charge_id,
                    )

                cls._run_transition(locked, decision, resolution)
                locked.save()

                receipt = None
                if decision.issue_receipt:
                    receipt, _ = PledgeReceipt.objects.get_or_create(
                        pledge=locked,
                        target_status=decision.new_status,
                    )
        except DatabaseError as e:
            cls.get_logger().error(
                "Failed to persist reconciliation decision",
                extra={
                    "pledge_id": str(pledge.pk),
                    "action": decision.action,
                },
                exc_info=True,
            )
            raise StoreWriteFailed(
                f"Failed to persist {decision.action} for pledge {pledge.pk}: {e}",
                details={"pledge_id": str(pledge.pk), "action": decision.action},
            ) from e

        cls.get_logger().info(
            f"Pledge {decision.action}",
            extra={
                "pledge_id": str(locked.pk),
                "before_status": pledge.status,
                "after_status": locked.status,
                "receipt_id": str(receipt.pk) if receipt else None,
            },
        )
        return locked, receipt

    @staticmethod
    def _run_transition(
        pledge: Pledge,
        decision: Decision,
        resolution: Resolution | None,
    ) -> None:
        amount_charged = None
        started_at = None
        if resolution is not None:
            amount_charged = resolution.amount_charged
            started_at = resolution.started_at
        if amount_charged is None:
            amount_charged = pledge.amount

        try:
            if decision.action == ReconciliationAction.ACTIVATED:
                pledge.activate(amount_charged=amount_charged, started_at=started_at)
            elif decision.action == ReconciliationAction.COMPLETED:
                pledge.complete(amount_charged=amount_charged, started_at=started_at)
            elif decision.action == ReconciliationAction.CANCELLED:
                pledge.cancel()
            elif decision.action == ReconciliationAction.AUTO_CANCELLED:
                pledge.auto_cancel()
            else:
                raise InvalidStateTransitionError(
                    f"'{decision.action}' is not a status transition",
                    details={"pledge_id": str(pledge.pk), "action": decision.action},
                )
        except TransitionNotAllowed as e:
            raise InvalidStateTransitionError(
                f"State transition not allowed: {e}",
                details={
                    "pledge_id": str(pledge.pk),
                    "current_state": pledge.status,
                    "target_state": decision.new_status,
                    "transition": decision.action,
                },
            ) from e
