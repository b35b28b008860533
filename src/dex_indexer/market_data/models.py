"""
Market state records.

These dataclasses are what the pipeline persists: ledger checkpoints, the
current state of AMM pools, order-book offers and the connection audit
trail.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class OfferStatus(str, Enum):
    """Order-book offer lifecycle states."""
    ACTIVE = "active"                  # Created by OfferCreate
    CANCELLED = "cancelled"            # Closed by a matching OfferCancel
    INVALID_PARSE = "invalid_parse"    # Kept for audit, amounts undecodable


class ConnectionEventType(str, Enum):
    """Connection audit event kinds."""
    ATTEMPT = "attempt"
    SUCCESS = "success"
    FAILURE = "failure"
    RETRY = "retry"


def make_offer_id(account: str, sequence: int) -> str:
    """Offer identifier derived from the owning account and sequence."""
    return f"{account}:{sequence}"


@dataclass
class LedgerCheckpoint:
    """Durable marker that a ledger has been fully processed."""
    ledger_index: int
    ledger_hash: str
    close_time: int
    transaction_count: int
    processing_duration_ms: int
    close_time_human: Optional[datetime] = None


@dataclass
class AMMPool:
    """
    Current state of one AMM pool.

    Assets are stored in canonical (sorted) order so every transaction
    touching the pair lands on the same pool_id. Reserves or fee left as
    None mean "unknown from this transaction" and keep the stored value.
    """
    pool_id: str
    asset1: str
    asset2: str
    last_updated_ledger: int
    reserve1: Optional[Decimal] = None
    reserve2: Optional[Decimal] = None
    fee_bps: Optional[Decimal] = None
    ledger_hash: Optional[str] = None


@dataclass
class OrderbookOffer:
    """A standing order-book offer as last seen on the ledger."""
    offer_id: str
    owner: str
    sequence: int
    base_asset: Optional[str]
    quote_asset: Optional[str]
    ledger_index: int
    status: OfferStatus = OfferStatus.ACTIVE
    price: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    ledger_hash: Optional[str] = None
    tx_hash: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionEvent:
    """One row of the connection audit trail."""
    service: str
    event: str
    attempt: int
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ts: Optional[datetime] = None
