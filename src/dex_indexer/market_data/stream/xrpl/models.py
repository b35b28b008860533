"""
XRPL wire models.

Typed views over the JSON payloads rippled returns:
- Asset / Amount: XRPL currency amounts (XRP drops or issued tokens)
- Transaction variants: a tagged union over the DEX transaction kinds the
  indexer understands, with Other carrying anything unrecognized
- LedgerClosed, LedgerResponse, ServerInfo: stream and RPC envelopes

Decoding here is structural only. Numeric validation is left to the parsers
so that a bad amount can be recorded instead of rejected outright.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ....core.exceptions import ParseError, RPCError


XRP_CURRENCY = "XRP"
DROPS_PER_XRP = Decimal(1_000_000)

# Seconds between the Unix epoch and the Ripple epoch (2000-01-01T00:00:00Z)
RIPPLE_EPOCH_OFFSET = 946684800

SUCCESS_RESULT = "tesSUCCESS"


class TransactionType(str, Enum):
    """Transaction kinds with DEX side effects."""
    AMM_CREATE = "AMMCreate"
    AMM_DEPOSIT = "AMMDeposit"
    AMM_WITHDRAW = "AMMWithdraw"
    OFFER_CREATE = "OfferCreate"
    OFFER_CANCEL = "OfferCancel"


# ============================================================================
# Assets & Amounts
# ============================================================================

@dataclass(frozen=True)
class Asset:
    """A currency on the ledger: XRP, or a currency code plus issuer."""
    currency: str
    issuer: Optional[str] = None

    @property
    def is_xrp(self) -> bool:
        return self.currency == XRP_CURRENCY and not self.issuer

    def __str__(self) -> str:
        if self.is_xrp:
            return XRP_CURRENCY
        return f"{self.currency}.{self.issuer}"

    @classmethod
    def from_raw(cls, raw: Any) -> "Asset":
        """
        Decode an asset specifier such as {"currency": "XRP"} or
        {"currency": "USD", "issuer": "r..."}.

        Raises:
            ParseError: If the payload is not an asset specifier
        """
        if not isinstance(raw, dict) or not raw.get("currency"):
            raise ParseError(f"invalid asset specifier: {raw!r}")
        currency = str(raw["currency"])
        issuer = raw.get("issuer")
        if currency != XRP_CURRENCY and not issuer:
            raise ParseError(f"issued currency {currency} without issuer")
        return cls(currency=currency, issuer=issuer)


@dataclass(frozen=True)
class Amount:
    """
    An XRPL amount.

    XRP amounts arrive as a string of drops, issued-token amounts as
    {"currency", "issuer", "value"}. The value is kept verbatim until
    to_decimal() is called.
    """
    asset: Asset
    value: str

    @classmethod
    def from_raw(cls, raw: Any) -> "Amount":
        """
        Decode an amount field.

        Raises:
            ParseError: If the field is missing or has the wrong shape
        """
        if raw is None:
            raise ParseError("amount field missing")
        if isinstance(raw, (str, int)) and not isinstance(raw, bool):
            return cls(asset=Asset(XRP_CURRENCY), value=str(raw))
        if isinstance(raw, dict) and "value" in raw:
            return cls(asset=Asset.from_raw(raw), value=str(raw["value"]))
        raise ParseError(f"invalid amount: {raw!r}")

    def to_decimal(self) -> Decimal:
        """
        Numeric value in whole units (XRP drops are converted to XRP).

        Raises:
            ParseError: If the value is not a finite number
        """
        try:
            value = Decimal(self.value)
        except InvalidOperation:
            raise ParseError(f"non-numeric amount value: {self.value!r}")
        if not value.is_finite():
            raise ParseError(f"non-finite amount value: {self.value!r}")
        if self.asset.is_xrp:
            return value / DROPS_PER_XRP
        return value


# ============================================================================
# Transactions (tagged union)
# ============================================================================

@dataclass(frozen=True)
class Transaction:
    """Fields shared by every transaction kind."""
    tx_type: str
    hash: Optional[str]
    account: Optional[str]
    sequence: Optional[int]
    ticket_sequence: Optional[int]
    meta: Optional[Dict[str, Any]] = field(default=None, repr=False)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def result(self) -> Optional[str]:
        """Engine result code from metadata, if metadata was delivered."""
        if self.meta:
            return self.meta.get("TransactionResult")
        return None

    @property
    def succeeded(self) -> bool:
        """False only when metadata says the transaction failed."""
        result = self.result
        return result is None or result == SUCCESS_RESULT

    @property
    def effective_sequence(self) -> Optional[int]:
        """Sequence that identifies objects this transaction creates."""
        if self.sequence:
            return self.sequence
        return self.ticket_sequence


@dataclass(frozen=True)
class AMMCreate(Transaction):
    amount: Any = None
    amount2: Any = None
    trading_fee: Any = None


@dataclass(frozen=True)
class AMMDeposit(Transaction):
    asset: Any = None
    asset2: Any = None
    amount: Any = None
    amount2: Any = None


@dataclass(frozen=True)
class AMMWithdraw(Transaction):
    asset: Any = None
    asset2: Any = None
    amount: Any = None
    amount2: Any = None


@dataclass(frozen=True)
class OfferCreate(Transaction):
    taker_gets: Any = None
    taker_pays: Any = None
    flags: int = 0
    expiration: Optional[int] = None


@dataclass(frozen=True)
class OfferCancel(Transaction):
    offer_sequence: Optional[int] = None


@dataclass(frozen=True)
class Other(Transaction):
    """Any transaction kind the indexer does not act on."""
    pass


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _common_fields(raw: Dict[str, Any]) -> Dict[str, Any]:
    meta = raw.get("metaData", raw.get("meta"))
    return {
        "tx_type": str(raw.get("TransactionType", "")),
        "hash": raw.get("hash"),
        "account": raw.get("Account"),
        "sequence": _as_int(raw.get("Sequence")),
        "ticket_sequence": _as_int(raw.get("TicketSequence")),
        "meta": meta if isinstance(meta, dict) else None,
        "raw": raw,
    }


_DECODERS: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Transaction]] = {
    TransactionType.AMM_CREATE.value: lambda raw, common: AMMCreate(
        **common,
        amount=raw.get("Amount"),
        amount2=raw.get("Amount2"),
        trading_fee=raw.get("TradingFee"),
    ),
    TransactionType.AMM_DEPOSIT.value: lambda raw, common: AMMDeposit(
        **common,
        asset=raw.get("Asset"),
        asset2=raw.get("Asset2"),
        amount=raw.get("Amount"),
        amount2=raw.get("Amount2"),
    ),
    TransactionType.AMM_WITHDRAW.value: lambda raw, common: AMMWithdraw(
        **common,
        asset=raw.get("Asset"),
        asset2=raw.get("Asset2"),
        amount=raw.get("Amount"),
        amount2=raw.get("Amount2"),
    ),
    TransactionType.OFFER_CREATE.value: lambda raw, common: OfferCreate(
        **common,
        taker_gets=raw.get("TakerGets"),
        taker_pays=raw.get("TakerPays"),
        flags=_as_int(raw.get("Flags")) or 0,
        expiration=_as_int(raw.get("Expiration")),
    ),
    TransactionType.OFFER_CANCEL.value: lambda raw, common: OfferCancel(
        **common,
        offer_sequence=_as_int(raw.get("OfferSequence")),
    ),
}


def decode_transaction(raw: Any) -> Transaction:
    """
    Decode a transaction JSON object into its tagged variant.

    Unknown kinds (and non-expanded transaction hashes) decode to Other so
    that nothing upstream adds is lost.

    Args:
        raw: Transaction JSON as delivered by rippled

    Returns:
        Transaction variant
    """
    if isinstance(raw, str):
        return Other(tx_type="", hash=raw, account=None, sequence=None,
                     ticket_sequence=None, raw={"hash": raw})
    if not isinstance(raw, dict):
        return Other(tx_type="", hash=None, account=None, sequence=None,
                     ticket_sequence=None, raw={"value": raw})

    common = _common_fields(raw)
    decoder = _DECODERS.get(common["tx_type"])
    if decoder is None:
        return Other(**common)
    return decoder(raw, common)


# ============================================================================
# Ledger & Server Envelopes
# ============================================================================

@dataclass
class LedgerClosed:
    """A ledgerClosed notification from the ledger stream."""
    ledger_index: int
    ledger_hash: str
    ledger_time: int
    txn_count: int = 0

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "LedgerClosed":
        """
        Raises:
            RPCError: If the notification lacks a ledger index
        """
        index = _as_int(message.get("ledger_index"))
        if index is None:
            raise RPCError(f"ledgerClosed without ledger_index: {message!r}")
        return cls(
            ledger_index=index,
            ledger_hash=str(message.get("ledger_hash", "")),
            ledger_time=_as_int(message.get("ledger_time")) or 0,
            txn_count=_as_int(message.get("txn_count")) or 0,
        )


@dataclass
class LedgerResponse:
    """A closed ledger with its expanded transaction list."""
    ledger_index: int
    ledger_hash: str
    close_time: int
    transactions: List[Transaction] = field(default_factory=list)
    parent_hash: Optional[str] = None
    validated: bool = False

    @property
    def txn_count(self) -> int:
        return len(self.transactions)

    @property
    def close_time_human(self) -> datetime:
        """Close time as a UTC datetime (close_time is Ripple-epoch seconds)."""
        return datetime.fromtimestamp(self.close_time + RIPPLE_EPOCH_OFFSET, tz=timezone.utc)

    @classmethod
    def from_result(cls, result: Dict[str, Any]) -> "LedgerResponse":
        """
        Build from the result of a `ledger` request with expanded
        transactions.

        Raises:
            RPCError: If the result has no usable ledger header or
                transaction list
        """
        ledger = result.get("ledger")
        if not isinstance(ledger, dict):
            raise RPCError("ledger response missing 'ledger' object")

        index = _as_int(ledger.get("ledger_index", result.get("ledger_index")))
        if index is None:
            raise RPCError("ledger response missing ledger_index")

        ledger_hash = ledger.get("ledger_hash") or ledger.get("hash") or result.get("ledger_hash")
        if not ledger_hash:
            raise RPCError(f"ledger {index} response missing ledger_hash")

        raw_transactions = ledger.get("transactions") or []
        if not isinstance(raw_transactions, list):
            raise RPCError(f"ledger {index} transactions is not a list")
        transactions = [decode_transaction(tx) for tx in raw_transactions]

        return cls(
            ledger_index=index,
            ledger_hash=str(ledger_hash),
            close_time=_as_int(ledger.get("close_time")) or 0,
            transactions=transactions,
            parent_hash=ledger.get("parent_hash"),
            validated=bool(result.get("validated", False)),
        )


@dataclass
class ServerInfo:
    """Subset of server_info the indexer relies on."""
    validated_ledger: int
    complete_ledgers: str = ""
    server_state: str = "unknown"
    build_version: str = ""

    @classmethod
    def from_result(cls, result: Dict[str, Any]) -> "ServerInfo":
        """
        Parse a server_info result.

        The validated ledger comes from info.validated_ledger.seq, falling
        back to the upper bound of complete_ledgers while the node is still
        syncing.

        Raises:
            RPCError: If no validated ledger can be determined
        """
        info = result.get("info")
        if not isinstance(info, dict):
            raise RPCError("server_info response missing 'info'")

        complete = str(info.get("complete_ledgers") or "")
        validated = info.get("validated_ledger")
        seq = _as_int(validated.get("seq")) if isinstance(validated, dict) else None

        if seq is None and complete and complete != "empty":
            # "32570-62000000,62000002-62000500" -> 62000500
            seq = _as_int(complete.split(",")[-1].split("-")[-1])

        if not seq:
            raise RPCError("server_info response has no validated ledger")

        return cls(
            validated_ledger=seq,
            complete_ledgers=complete,
            server_state=str(info.get("server_state", "unknown")),
            build_version=str(info.get("build_version", "")),
        )
