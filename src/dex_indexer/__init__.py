"""
XRPL DEX ledger indexer.

Streams closed ledgers from a rippled node, extracts AMM and order-book
activity and keeps an idempotent view of current market state in DuckDB.
"""

__version__ = "0.1.0"
