"""
Ledger ingestion: per-ledger pipeline, gap detection and backfill.
"""

from .pipeline import LedgerProcessor, PipelineStats
from .backfill import (
    BackfillPlan,
    BackfillResult,
    BackfillWorker,
    SyncState,
    plan_backfill,
)

__all__ = [
    "LedgerProcessor",
    "PipelineStats",
    "BackfillPlan",
    "BackfillResult",
    "BackfillWorker",
    "SyncState",
    "plan_backfill",
]
