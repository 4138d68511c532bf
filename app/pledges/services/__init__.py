"""
Pledge reconciliation services.

This module provides:
- ReconciliationService: Sweep orchestrator
- PledgeStore: Version-guarded pledge reads and writes
- ReceiptService: At-most-once receipt delivery
- ReconciliationConfig: Sweep thresholds read from settings

Usage:
    from pledges.services import ReconciliationService, SweepFilter

    summary = ReconciliationService.run_sweep(SweepFilter(mode="live"), limit=500)
"""

from pledges.services.config import ReconciliationConfig
from pledges.services.identifier_resolver import (
    ProcessorSignal,
    Resolution,
    classify_status,
    resolve,
)
from pledges.services.pledge_store import PledgeStore, SweepFilter
from pledges.services.receipt_service import (
    EmailReceiptSender,
    ReceiptPayload,
    ReceiptSender,
    ReceiptService,
)
from pledges.services.reconciliation_service import (
    PledgeResult,
    ReconciliationService,
    SweepSummary,
)
from pledges.services.transition_rules import Decision, decide, within_grace_window

__all__ = [
    "Decision",
    "EmailReceiptSender",
    "PledgeResult",
    "PledgeStore",
    "ProcessorSignal",
    "ReceiptPayload",
    "ReceiptSender",
    "ReceiptService",
    "ReconciliationConfig",
    "ReconciliationService",
    "Resolution",
    "SweepFilter",
    "SweepSummary",
    "classify_status",
    "decide",
    "resolve",
    "within_grace_window",
]
