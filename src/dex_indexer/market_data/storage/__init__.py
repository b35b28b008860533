"""
Storage layer for the ledger indexer.

DuckDB-backed persistence of checkpoints, AMM pools, order-book offers and
the connection audit trail.
"""

from .database_manager import IndexerStore, resolve_database_path
from .schema import create_all_tables, get_table_stats

__all__ = [
    "IndexerStore",
    "resolve_database_path",
    "create_all_tables",
    "get_table_stats",
]
