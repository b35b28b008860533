"""
AMM transaction parser.

Turns AMMCreate / AMMDeposit / AMMWithdraw transactions into the current
state of the pool they touch. Every other transaction kind is "not
applicable" and yields None.
"""

import hashlib
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from ....core.exceptions import ParseError
from ...models import AMMPool
from .models import (
    XRP_CURRENCY,
    AMMCreate,
    AMMDeposit,
    AMMWithdraw,
    Amount,
    Asset,
    Transaction,
)

logger = logging.getLogger(__name__)


# TradingFee is expressed in 1/100,000 units; 1000 (1%) is the protocol cap
MAX_TRADING_FEE = 1000
TRADING_FEE_PER_BPS = Decimal(10)


def make_pool_id(asset1: str, asset2: str) -> str:
    """
    Deterministic pool identifier for an asset pair.

    The pair is ordered first, so (XRP, USD) and (USD, XRP) map to the
    same pool.
    """
    first, second = sorted([asset1, asset2])
    return hashlib.sha256(f"{first}|{second}".encode("utf-8")).hexdigest()


def _fee_bps(raw_fee: Any) -> Decimal:
    """Convert a TradingFee field to basis points."""
    if raw_fee is None or isinstance(raw_fee, bool):
        raise ParseError("TradingFee missing")
    try:
        fee = Decimal(str(raw_fee))
    except InvalidOperation:
        raise ParseError(f"non-numeric TradingFee: {raw_fee!r}")
    if not fee.is_finite() or fee < 0 or fee > MAX_TRADING_FEE:
        raise ParseError(f"TradingFee out of range: {raw_fee!r}")
    return fee / TRADING_FEE_PER_BPS


class AMMParser:
    """
    Stateless parser for AMM transactions.

    Only counters are kept, so one instance per processing path (live,
    backfill) is safe.
    """

    def __init__(self):
        self.parsed_count = 0
        self.skipped_count = 0
        self.error_count = 0

    def parse_transaction(
        self,
        tx: Transaction,
        ledger_index: int,
        ledger_hash: str
    ) -> Optional[AMMPool]:
        """
        Parse a transaction into the pool state it produces.

        Args:
            tx: Decoded transaction
            ledger_index: Ledger the transaction was included in
            ledger_hash: Hash of that ledger

        Returns:
            AMMPool, or None if the transaction is not an AMM transaction
            (or failed on ledger)

        Raises:
            ParseError: If an AMM transaction is malformed
        """
        if not isinstance(tx, (AMMCreate, AMMDeposit, AMMWithdraw)):
            self.skipped_count += 1
            return None

        if not tx.succeeded:
            logger.debug(f"Ignoring failed {tx.tx_type} {tx.hash} ({tx.result})")
            self.skipped_count += 1
            return None

        try:
            if isinstance(tx, AMMCreate):
                pool = self._parse_create(tx, ledger_index, ledger_hash)
            else:
                pool = self._parse_liquidity_change(tx, ledger_index, ledger_hash)
        except ParseError as e:
            self.error_count += 1
            raise ParseError(f"{tx.tx_type} {tx.hash}: {e}", tx_hash=tx.hash) from e

        self.parsed_count += 1
        return pool

    def _parse_create(self, tx: AMMCreate, ledger_index: int, ledger_hash: str) -> AMMPool:
        amount = Amount.from_raw(tx.amount)
        amount2 = Amount.from_raw(tx.amount2)

        if amount.asset == amount2.asset:
            raise ParseError(f"AMMCreate with identical assets: {amount.asset}")

        reserves = {
            str(amount.asset): amount.to_decimal(),
            str(amount2.asset): amount2.to_decimal(),
        }
        return self._build_pool(
            amount.asset, amount2.asset, reserves,
            _fee_bps(tx.trading_fee), ledger_index, ledger_hash
        )

    def _parse_liquidity_change(
        self,
        tx: Transaction,
        ledger_index: int,
        ledger_hash: str
    ) -> AMMPool:
        """
        Deposits and withdrawals only carry the amounts moved, so the
        post-transaction reserves are read from metadata. Without
        metadata the reserves stay unknown and the store keeps its values.
        """
        asset = Asset.from_raw(tx.asset)
        asset2 = Asset.from_raw(tx.asset2)

        if asset == asset2:
            raise ParseError(f"{tx.tx_type} with identical assets: {asset}")

        reserves, fee_bps = self._state_from_meta(tx.meta, asset, asset2)
        return self._build_pool(asset, asset2, reserves, fee_bps, ledger_index, ledger_hash)

    def _state_from_meta(
        self,
        meta: Optional[Dict[str, Any]],
        asset: Asset,
        asset2: Asset
    ) -> Tuple[Dict[str, Decimal], Optional[Decimal]]:
        """
        Extract pool reserves and fee from transaction metadata.

        The AMM ledger entry names the AMM account and carries the fee. The
        account's XRP balance sits on its AccountRoot, token balances on
        the trust lines (RippleState) it holds with each issuer.

        Returns:
            (reserves keyed by asset string, fee in bps or None)
        """
        if not meta:
            return {}, None

        entries = self._affected_entries(meta)

        amm_account = None
        fee_bps = None
        xrp_balance = None

        for entry_type, fields in entries:
            if entry_type == "AMM":
                amm_account = fields.get("Account", amm_account)
                if "TradingFee" in fields:
                    fee_bps = _fee_bps(fields["TradingFee"])

        for entry_type, fields in entries:
            if entry_type != "AccountRoot":
                continue
            if "AMMID" in fields or (amm_account and fields.get("Account") == amm_account):
                amm_account = fields.get("Account", amm_account)
                xrp_balance = fields.get("Balance", xrp_balance)

        if amm_account is None:
            return {}, fee_bps

        balances: Dict[str, Decimal] = {}
        if xrp_balance is not None:
            balances[XRP_CURRENCY] = Amount(Asset(XRP_CURRENCY), str(xrp_balance)).to_decimal()

        for entry_type, fields in entries:
            if entry_type != "RippleState":
                continue
            high = fields.get("HighLimit") or {}
            low = fields.get("LowLimit") or {}
            balance = fields.get("Balance") or {}
            if not all(isinstance(part, dict) for part in (high, low, balance)):
                raise ParseError("malformed RippleState in metadata")

            if high.get("issuer") == amm_account:
                issuer = low.get("issuer")
            elif low.get("issuer") == amm_account:
                issuer = high.get("issuer")
            else:
                continue

            token = Amount(Asset(str(balance.get("currency")), issuer), str(balance.get("value")))
            # Trust line balances are signed by which side holds the line
            balances[str(token.asset)] = abs(token.to_decimal())

        wanted = {str(asset), str(asset2)}
        reserves = {key: value for key, value in balances.items() if key in wanted}
        return reserves, fee_bps

    @staticmethod
    def _affected_entries(meta: Dict[str, Any]) -> List[Tuple[str, Dict[str, Any]]]:
        """Flatten AffectedNodes into (LedgerEntryType, fields) pairs."""
        entries = []
        for node in meta.get("AffectedNodes") or []:
            if not isinstance(node, dict):
                continue
            for body in node.values():
                if not isinstance(body, dict):
                    continue
                fields = body.get("FinalFields") or body.get("NewFields") or {}
                if not isinstance(fields, dict):
                    raise ParseError("malformed AffectedNodes entry in metadata")
                entries.append((body.get("LedgerEntryType", ""), fields))
        return entries

    @staticmethod
    def _build_pool(
        asset: Asset,
        asset2: Asset,
        reserves: Dict[str, Decimal],
        fee_bps: Optional[Decimal],
        ledger_index: int,
        ledger_hash: str
    ) -> AMMPool:
        first, second = sorted([str(asset), str(asset2)])
        return AMMPool(
            pool_id=make_pool_id(first, second),
            asset1=first,
            asset2=second,
            reserve1=reserves.get(first),
            reserve2=reserves.get(second),
            fee_bps=fee_bps,
            last_updated_ledger=ledger_index,
            ledger_hash=ledger_hash,
        )
