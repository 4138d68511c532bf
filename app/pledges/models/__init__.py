"""
Pledge domain models.

This module contains all pledge-related models:
- Pledge: A one-time or recurring payment commitment
- ReconciliationRun: One row per reconciliation sweep
- ReconciliationOutcome: Immutable per-pledge decision of a sweep
- PledgeReceipt: Receipt intent recorded with a status transition
"""

from pledges.models.pledge import Pledge
from pledges.models.reconciliation import (
    PledgeReceipt,
    ReconciliationOutcome,
    ReconciliationRun,
)

__all__ = [
    "Pledge",
    "PledgeReceipt",
    "ReconciliationOutcome",
    "ReconciliationRun",
]
