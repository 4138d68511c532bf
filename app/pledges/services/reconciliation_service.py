"""
Reconciliation sweep for pending pledges.

This module provides the ReconciliationService which brings pending pledges
in line with Stripe when webhooks were delayed, dropped or never delivered.
Stripe is the source of truth; the sweep produces the same transition and
receipt a webhook would have produced, and never produces them twice.

Per-pledge Pipeline:
    1. Mode check: the pledge's mode must be configured and match the sweep
    2. Grace window: young pledges are left to the webhook
    3. Resolve: lookup strategies until Stripe gives a definitive status
    4. Decide: pure transition rules
    5. Persist: version-guarded transition plus receipt intent
    6. Receipt: claimed and sent at most once
    7. Outcome: append-only audit record

Failure Isolation:
    Every per-pledge error is caught at the pledge boundary and recorded as
    an error (or skipped) outcome. Only a sweep-level failure marks the run
    failed and raises ReconciliationError.

Usage:
    from pledges.services.reconciliation_service import ReconciliationService

    result = ReconciliationService.trigger_sweep(
        sweep_filter=SweepFilter(mode="live"),
        limit=200,
        trigger=SweepTrigger.MANUAL,
        triggered_by=request.user,
    )

    if result.success:
        summary = result.data
        print(f"Activated {summary.activated}, errors {summary.errors}")
"""

from __future__ import annotations

import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from django.db import DatabaseError, connection
from django.utils import timezone

from core.services import BaseService, ServiceResult

from pledges.adapters import StripeAdapter
from pledges.exceptions import (
    InvalidModeMismatch,
    LockAcquisitionError,
    LookupInconclusive,
    ProcessorKindMismatch,
    ProcessorNotConfigured,
    ProcessorUnavailable,
    ReceiptSendFailed,
    ReconciliationError,
    ReconciliationLockError,
    StaleRecordError,
    StoreWriteFailed,
)
from pledges.locks import DistributedLock
from pledges.models import PledgeReceipt, ReconciliationOutcome, ReconciliationRun
from pledges.services.config import ReconciliationConfig
from pledges.services.identifier_resolver import resolve
from pledges.services.pledge_store import PledgeStore, SweepFilter
from pledges.services.receipt_service import ReceiptService
from pledges.services.transition_rules import decide, within_grace_window
from pledges.state_machines import (
    LookupStrategy,
    ReconciliationAction,
    ReconciliationRunStatus,
    SweepTrigger,
)

if TYPE_CHECKING:
    from typing import Any

    from pledges.models import Pledge


# =============================================================================
# Constants
# =============================================================================

RECONCILIATION_RUN_LOCK_KEY = "pledges:reconciliation:run"
RECONCILIATION_RUN_LOCK_TTL = 900  # 15 minutes, extended while the sweep runs

# Error taxonomy recorded in outcomes, most specific first
ERROR_TAXONOMY: tuple[type[Exception], ...] = (
    ProcessorNotConfigured,
    ProcessorUnavailable,
    ProcessorKindMismatch,
    InvalidModeMismatch,
    StaleRecordError,
    StoreWriteFailed,
    ReceiptSendFailed,
    LookupInconclusive,
)

SUGGESTED_CAUSES = {
    "ProcessorNotConfigured": "No Stripe key for this mode; set STRIPE_SECRET_KEY_TEST or _LIVE",
    "ProcessorUnavailable": "Stripe unreachable or timed out; retried next sweep",
    "InvalidModeMismatch": "Pledge mode differs from the sweep or credential mode",
    "StaleRecordError": "Pledge changed during the sweep, most likely by the webhook",
    "StoreWriteFailed": "Database rejected the write; pledge left unchanged",
    "LookupInconclusive": "No definitive Stripe status yet; retried next sweep",
    "ProcessorKindMismatch": "Stripe record does not fit the pledge kind; check the checkout flow",
}


def error_type_for(exc: Exception) -> str:
    """Taxonomy name for an exception, falling back to its class name."""
    for error_class in ERROR_TAXONOMY:
        if isinstance(exc, error_class):
            return error_class.__name__
    return type(exc).__name__


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class PledgeResult:
    """What the sweep did with one pledge."""

    pledge_id: uuid.UUID
    before_status: str
    after_status: str
    action: str
    strategy_used: str = LookupStrategy.NONE
    processor_object_id: str = ""
    processor_reported_status: str = ""
    error_type: str = ""
    error_detail: str = ""
    receipt_sent: bool = False
    receipt_error: bool = False
    outcome_id: uuid.UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pledgeId": str(self.pledge_id),
            "beforeStatus": self.before_status,
            "afterStatus": self.after_status,
            "strategyUsed": self.strategy_used,
            "processorObjectId": self.processor_object_id or None,
            "processorReportedStatus": self.processor_reported_status or None,
            "actionTaken": self.action,
            "errorType": self.error_type or None,
            "errorDetail": self.error_detail or None,
        }


@dataclass
class SweepSummary:
    """Counters of a sweep, folded from its per-pledge results."""

    total: int = 0
    activated: int = 0
    completed: int = 0
    cancelled: int = 0
    auto_cancelled: int = 0
    skipped: int = 0
    errors: int = 0
    receipts_sent: int = 0
    receipt_errors: int = 0
    deadline_reached: bool = False
    run_id: uuid.UUID | None = None
    results: list[PledgeResult] = field(default_factory=list)

    @classmethod
    def from_results(
        cls,
        results: list[PledgeResult],
        deadline_reached: bool = False,
        run_id: uuid.UUID | None = None,
    ) -> SweepSummary:
        def count(action: str) -> int:
            return sum(1 for r in results if r.action == action)

        return cls(
            total=len(results),
            activated=count(ReconciliationAction.ACTIVATED),
            completed=count(ReconciliationAction.COMPLETED),
            cancelled=count(ReconciliationAction.CANCELLED),
            auto_cancelled=count(ReconciliationAction.AUTO_CANCELLED),
            skipped=count(ReconciliationAction.SKIPPED),
            errors=count(ReconciliationAction.ERROR),
            receipts_sent=sum(1 for r in results if r.receipt_sent),
            receipt_errors=sum(1 for r in results if r.receipt_error),
            deadline_reached=deadline_reached,
            run_id=run_id,
            results=list(results),
        )

    def counts(self) -> dict[str, int]:
        return {
            "total": self.total,
            "activated": self.activated,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "autoCancelled": self.auto_cancelled,
            "skipped": self.skipped,
            "errors": self.errors,
            "receiptsSent": self.receipts_sent,
            "receiptErrors": self.receipt_errors,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "runId": str(self.run_id) if self.run_id else None,
            "summary": self.counts(),
            "deadlineReached": self.deadline_reached,
            "results": [r.to_dict() for r in self.results],
        }


# =============================================================================
# Reconciliation Service
# =============================================================================


class ReconciliationService(BaseService):
    """
    Service that reconciles pending pledges against Stripe.

    Concurrency Safety:
        - Global run lock prevents overlapping sweeps
        - Version-guarded single-row writes lose to concurrent webhooks
        - Receipts are claimed with a conditional update before sending

    Usage:
        # Scheduled or manual sweep
        summary = ReconciliationService.run_sweep(limit=500)

        # Same, with lock contention reported as a failed ServiceResult
        result = ReconciliationService.trigger_sweep(limit=500)
    """

    # Stripe adapter - can be injected for testing
    _stripe_adapter: type | None = None

    @classmethod
    def get_stripe_adapter(cls) -> type:
        """Get the Stripe adapter class."""
        return cls._stripe_adapter or StripeAdapter

    @classmethod
    def set_stripe_adapter(cls, adapter: type | None) -> None:
        """Set the Stripe adapter class (for testing)."""
        cls._stripe_adapter = adapter

    # =========================================================================
    # Public API
    # =========================================================================

    @classmethod
    def trigger_sweep(
        cls,
        sweep_filter: SweepFilter | None = None,
        limit: int | None = None,
        **kwargs,
    ) -> ServiceResult[SweepSummary]:
        """
        Run a sweep, reporting a concurrent sweep as a failed result.

        Accepts the same keyword arguments as run_sweep().
        """
        try:
            summary = cls.run_sweep(sweep_filter, limit, **kwargs)
        except ReconciliationLockError as e:
            return ServiceResult.failure(
                e.message,
                error_code=e.error_code,
            )
        return ServiceResult.success(summary)

    @classmethod
    def run_sweep(
        cls,
        sweep_filter: SweepFilter | None = None,
        limit: int | None = None,
        *,
        trigger: str = SweepTrigger.SCHEDULED,
        triggered_by=None,
        config: ReconciliationConfig | None = None,
        deadline_seconds: float | None = None,
    ) -> SweepSummary:
        """
        Reconcile up to `limit` pending pledges.

        Args:
            sweep_filter: Mode and creation-time filter
            limit: Maximum pledges to consider (default from config,
                capped at config.max_limit)
            trigger: SweepTrigger recorded on the run
            triggered_by: User who started a manual sweep
            config: Thresholds (default from settings)
            deadline_seconds: Wall-clock budget, overriding the config

        Returns:
            SweepSummary; deadline_reached is set when the budget ran out

        Raises:
            ReconciliationLockError: Another sweep is running
            ReconciliationError: The sweep failed as a whole
        """
        config = config or ReconciliationConfig.from_settings()
        sweep_filter = sweep_filter or SweepFilter()
        limit = min(limit or config.default_limit, config.max_limit)
        if deadline_seconds is None:
            deadline_seconds = config.time_budget_seconds

        cls.get_logger().info(
            "Starting reconciliation sweep",
            extra={
                "trigger": trigger,
                "mode": sweep_filter.mode,
                "since": sweep_filter.created_after.isoformat()
                if sweep_filter.created_after
                else None,
                "limit": limit,
                "max_workers": config.max_workers,
                "deadline_seconds": deadline_seconds,
            },
        )

        lock = DistributedLock(
            RECONCILIATION_RUN_LOCK_KEY,
            ttl=RECONCILIATION_RUN_LOCK_TTL,
        )
        try:
            lock.acquire()
        except LockAcquisitionError:
            cls.get_logger().warning(
                "Another reconciliation sweep is in progress",
                extra={"lock_key": RECONCILIATION_RUN_LOCK_KEY},
            )
            raise ReconciliationLockError(
                "Another reconciliation sweep is in progress",
                details={"lock_key": RECONCILIATION_RUN_LOCK_KEY},
            )

        try:
            return cls._run_sweep_with_lock(
                sweep_filter=sweep_filter,
                limit=limit,
                trigger=trigger,
                triggered_by=triggered_by,
                config=config,
                deadline_seconds=deadline_seconds,
                lock=lock,
            )
        finally:
            lock.release()

    # =========================================================================
    # Internal: Run Orchestration
    # =========================================================================

    @classmethod
    def _run_sweep_with_lock(
        cls,
        sweep_filter: SweepFilter,
        limit: int,
        trigger: str,
        triggered_by,
        config: ReconciliationConfig,
        deadline_seconds: float,
        lock: DistributedLock,
    ) -> SweepSummary:
        """Execute the sweep with the run lock already held."""
        started_at = timezone.now()
        run = ReconciliationRun.objects.create(
            started_at=started_at,
            trigger=trigger,
            triggered_by=triggered_by,
            mode=sweep_filter.mode or "",
            since=sweep_filter.created_after,
            limit=limit,
            status=ReconciliationRunStatus.RUNNING,
        )
        deadline = time.monotonic() + deadline_seconds if deadline_seconds else None

        try:
            candidates = PledgeStore.list_pending_candidates(sweep_filter, limit)

            if config.max_workers > 1:
                results, deadline_reached = cls._process_concurrently(
                    run, candidates, sweep_filter, config, deadline, lock
                )
            else:
                results, deadline_reached = cls._process_sequentially(
                    run, candidates, sweep_filter, config, deadline, lock
                )

            summary = SweepSummary.from_results(results, deadline_reached, run.id)

            completed_at = timezone.now()
            run.completed_at = completed_at
            run.deadline_reached = deadline_reached
            run.total = summary.total
            run.activated = summary.activated
            run.completed = summary.completed
            run.cancelled = summary.cancelled
            run.auto_cancelled = summary.auto_cancelled
            run.skipped = summary.skipped
            run.errors = summary.errors
            run.receipts_sent = summary.receipts_sent
            run.receipt_errors = summary.receipt_errors
            run.status = (
                ReconciliationRunStatus.PARTIAL
                if deadline_reached
                else ReconciliationRunStatus.COMPLETED
            )
            run.save()

            cls.get_logger().info(
                "Reconciliation sweep completed",
                extra={
                    "run_id": str(run.id),
                    "candidates": len(candidates),
                    **summary.counts(),
                    "deadline_reached": deadline_reached,
                    "duration_seconds": (completed_at - started_at).total_seconds(),
                },
            )
            return summary

        except Exception as e:
            run.completed_at = timezone.now()
            run.status = ReconciliationRunStatus.FAILED
            run.error_message = str(e)
            run.save()

            cls.get_logger().error(
                "Reconciliation sweep failed",
                extra={"run_id": str(run.id), "error": str(e)},
                exc_info=True,
            )
            raise ReconciliationError(
                f"Reconciliation sweep failed: {e}",
                details={"run_id": str(run.id)},
            ) from e

    @staticmethod
    def _deadline_passed(deadline: float | None) -> bool:
        return deadline is not None and time.monotonic() >= deadline

    @classmethod
    def _process_sequentially(
        cls,
        run: ReconciliationRun,
        candidates: list[Pledge],
        sweep_filter: SweepFilter,
        config: ReconciliationConfig,
        deadline: float | None,
        lock: DistributedLock,
    ) -> tuple[list[PledgeResult], bool]:
        results: list[PledgeResult] = []
        for pledge in candidates:
            if cls._deadline_passed(deadline):
                return results, True
            results.append(cls.reconcile_pledge(run, pledge, sweep_filter, config))
            lock.extend()
        return results, False

    @classmethod
    def _process_concurrently(
        cls,
        run: ReconciliationRun,
        candidates: list[Pledge],
        sweep_filter: SweepFilter,
        config: ReconciliationConfig,
        deadline: float | None,
        lock: DistributedLock,
    ) -> tuple[list[PledgeResult], bool]:
        """
        Reconcile on a bounded thread pool.

        At most max_workers pledges are in flight. Once the deadline passes
        no new pledge is started; in-flight ones finish. Results keep
        candidate order.
        """
        indexed: dict[int, PledgeResult] = {}
        deadline_reached = False

        with ThreadPoolExecutor(
            max_workers=config.max_workers,
            thread_name_prefix="reconcile",
        ) as executor:
            in_flight = {}
            for index, pledge in enumerate(candidates):
                if cls._deadline_passed(deadline):
                    deadline_reached = True
                    break
                if len(in_flight) >= config.max_workers:
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    for future in done:
                        indexed[in_flight.pop(future)] = future.result()
                    lock.extend()
                    if cls._deadline_passed(deadline):
                        deadline_reached = True
                        break
                future = executor.submit(
                    cls._reconcile_in_worker, run, pledge, sweep_filter, config
                )
                in_flight[future] = index

            for future in in_flight:
                indexed[in_flight[future]] = future.result()

        return [indexed[i] for i in sorted(indexed)], deadline_reached

    @classmethod
    def _reconcile_in_worker(
        cls,
        run: ReconciliationRun,
        pledge: Pledge,
        sweep_filter: SweepFilter,
        config: ReconciliationConfig,
    ) -> PledgeResult:
        try:
            return cls.reconcile_pledge(run, pledge, sweep_filter, config)
        finally:
            connection.close()

    # =========================================================================
    # Internal: Per-pledge Pipeline
    # =========================================================================

    @classmethod
    def reconcile_pledge(
        cls,
        run: ReconciliationRun,
        pledge: Pledge,
        sweep_filter: SweepFilter,
        config: ReconciliationConfig,
    ) -> PledgeResult:
        """
        Reconcile one pledge and record its outcome.

        Never raises for per-pledge failures; they become error or skipped
        results.
        """
        logger = cls.get_logger()
        before_status = pledge.status
        result = PledgeResult(
            pledge_id=pledge.id,
            before_status=before_status,
            after_status=before_status,
            action=ReconciliationAction.SKIPPED,
        )
        receipt: PledgeReceipt | None = None

        try:
            cls._check_mode(pledge, sweep_filter)

            age = pledge.age()
            if within_grace_window(age, config):
                return cls._record_outcome(run, result, receipt)

            resolution = resolve(pledge, cls.get_stripe_adapter(), config)
            decision = decide(before_status, resolution, age, config)

            result.strategy_used = resolution.strategy
            result.processor_object_id = resolution.processor_object_id
            result.processor_reported_status = resolution.processor_status
            result.action = decision.action

            if decision.action == ReconciliationAction.AUTO_CANCELLED:
                result.strategy_used = LookupStrategy.AGE_TIMEOUT
            elif decision.action == ReconciliationAction.ERROR:
                failure = resolution.failures[-1]
                result.error_type = error_type_for(failure)
                result.error_detail = cls._describe(failure)
            elif (
                decision.action == ReconciliationAction.SKIPPED
                and not resolution.is_definitive
            ):
                result.error_type = LookupInconclusive.__name__
                result.error_detail = SUGGESTED_CAUSES["LookupInconclusive"]

            if decision.is_transition:
                updated, receipt = PledgeStore.apply_transition(
                    pledge, decision, resolution
                )
                result.after_status = updated.status
                cls._deliver_side_effects(updated, decision, receipt, result)

        except (InvalidModeMismatch, ProcessorNotConfigured, StaleRecordError) as e:
            logger.info(
                "Pledge skipped",
                extra={"pledge_id": str(pledge.id), "error": str(e)},
            )
            result.action = ReconciliationAction.SKIPPED
            result.after_status = before_status
            result.error_type = error_type_for(e)
            result.error_detail = cls._describe(e)

        except Exception as e:
            logger.error(
                "Error reconciling pledge",
                extra={"pledge_id": str(pledge.id), "error": str(e)},
                exc_info=True,
            )
            result.action = ReconciliationAction.ERROR
            result.after_status = before_status
            result.error_type = error_type_for(e)
            result.error_detail = cls._describe(e)

        return cls._record_outcome(run, result, receipt)

    @classmethod
    def _check_mode(cls, pledge: Pledge, sweep_filter: SweepFilter) -> None:
        if sweep_filter.mode and pledge.processor_mode != sweep_filter.mode:
            raise InvalidModeMismatch(
                f"Pledge is {pledge.processor_mode} but the sweep is restricted "
                f"to {sweep_filter.mode}",
                details={
                    "pledge_mode": pledge.processor_mode,
                    "sweep_mode": sweep_filter.mode,
                },
            )
        if not cls.get_stripe_adapter().is_mode_configured(pledge.processor_mode):
            raise ProcessorNotConfigured(
                f"No Stripe key configured for {pledge.processor_mode} mode",
                details={"mode": pledge.processor_mode},
            )

    @classmethod
    def _deliver_side_effects(
        cls,
        pledge: Pledge,
        decision,
        receipt: PledgeReceipt | None,
        result: PledgeResult,
    ) -> None:
        """
        Send the receipt or notice; failures are counted, never raised.

        Runs after the transition has committed, so a failure here must not
        turn the outcome into an error.
        """
        try:
            if receipt is not None:
                result.receipt_sent = ReceiptService.send(receipt)
            elif decision.notify_payer:
                ReceiptService.notify_auto_cancel(pledge)
        except ReceiptSendFailed:
            result.receipt_error = True
        except Exception as e:
            cls.get_logger().error(
                "Side effect failed after transition",
                extra={
                    "pledge_id": str(pledge.id),
                    "receipt_id": str(receipt.id) if receipt else None,
                    "error": str(e),
                },
                exc_info=True,
            )
            result.receipt_error = True

    @classmethod
    def _record_outcome(
        cls,
        run: ReconciliationRun,
        result: PledgeResult,
        receipt: PledgeReceipt | None,
    ) -> PledgeResult:
        """Append the outcome row and link the receipt intent to it."""
        try:
            outcome = ReconciliationOutcome.objects.create(
                run=run,
                pledge_id=result.pledge_id,
                before_status=result.before_status,
                after_status=result.after_status,
                strategy_used=result.strategy_used,
                processor_object_id=result.processor_object_id,
                processor_reported_status=result.processor_reported_status,
                action_taken=result.action,
                error_type=result.error_type,
                error_detail=result.error_detail,
            )
        except DatabaseError:
            cls.get_logger().error(
                "Failed to record reconciliation outcome",
                extra={"pledge_id": str(result.pledge_id), "run_id": str(run.id)},
                exc_info=True,
            )
            return result

        result.outcome_id = outcome.id
        if receipt is not None:
            PledgeReceipt.objects.filter(pk=receipt.pk, outcome__isnull=True).update(
                outcome=outcome
            )
        return result

    @staticmethod
    def _describe(exc: Exception) -> str:
        message = getattr(exc, "message", None) or str(exc)
        cause = SUGGESTED_CAUSES.get(error_type_for(exc))
        return f"{message}. {cause}" if cause else message
