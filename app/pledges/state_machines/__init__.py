"""
State machine enums for pledge models.

This module defines the state enums used by pledge models with django-fsm.
"""

from pledges.state_machines.states import (
    CancellationReason,
    LookupStrategy,
    PledgeKind,
    PledgeStatus,
    ProcessorMode,
    ReceiptStatus,
    ReconciliationAction,
    ReconciliationRunStatus,
    SweepTrigger,
)

__all__ = [
    "CancellationReason",
    "LookupStrategy",
    "PledgeKind",
    "PledgeStatus",
    "ProcessorMode",
    "ReceiptStatus",
    "ReconciliationAction",
    "ReconciliationRunStatus",
    "SweepTrigger",
]
