"""
Market data streaming layer.

- xrpl/: XRP Ledger WebSocket source and DEX transaction parsers
"""

from .xrpl import LedgerSource, AMMParser, OrderbookParser

__all__ = [
    "LedgerSource",
    "AMMParser",
    "OrderbookParser",
]
