"""
XRP Ledger stream handlers.

- LedgerSource: WebSocket session to rippled (ledger feed + point fetch)
- AMMParser: AMMCreate / AMMDeposit / AMMWithdraw -> AMMPool
- OrderbookParser: OfferCreate -> OrderbookOffer, OfferCancel resolution
"""

from .client import LedgerSource
from .amm_parser import AMMParser, make_pool_id
from .orderbook_parser import OrderbookParser
from .models import (
    Amount,
    Asset,
    LedgerClosed,
    LedgerResponse,
    ServerInfo,
    Transaction,
    TransactionType,
    decode_transaction,
)

__all__ = [
    "LedgerSource",
    "AMMParser",
    "OrderbookParser",
    "make_pool_id",
    "Amount",
    "Asset",
    "LedgerClosed",
    "LedgerResponse",
    "ServerInfo",
    "Transaction",
    "TransactionType",
    "decode_transaction",
]
