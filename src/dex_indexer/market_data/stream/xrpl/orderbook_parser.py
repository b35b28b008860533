"""
Order-book transaction parser.

OfferCreate becomes an OrderbookOffer. Offers whose amounts cannot be
decoded are still returned, marked invalid_parse with the decode error in
meta, because every DEX-adjacent transaction must leave an audit record.
OfferCancel is resolved separately through parse_offer_cancel().
"""

import logging
from typing import Any, Dict, Optional, Tuple

from ....core.exceptions import ParseError
from ...models import OfferStatus, OrderbookOffer, make_offer_id
from .models import Amount, OfferCancel, OfferCreate, Transaction

logger = logging.getLogger(__name__)


class OrderbookParser:
    """
    Stateless parser for order-book transactions.

    Orientation: base = TakerGets (what the offer owner sells),
    quote = TakerPays (what the owner wants), price = quote / base.
    """

    def __init__(self):
        self.parsed_count = 0
        self.invalid_count = 0
        self.skipped_count = 0

    def parse_transaction(
        self,
        tx: Transaction,
        ledger_index: int,
        ledger_hash: str
    ) -> Optional[OrderbookOffer]:
        """
        Parse an OfferCreate into an offer record.

        Args:
            tx: Decoded transaction
            ledger_index: Ledger the transaction was included in
            ledger_hash: Hash of that ledger

        Returns:
            OrderbookOffer (active or invalid_parse), or None if the
            transaction is not an OfferCreate (or failed on ledger)

        Raises:
            ParseError: If the offer cannot be identified (no account or
                sequence), since no offer_id can be derived
        """
        if not isinstance(tx, OfferCreate):
            self.skipped_count += 1
            return None

        if not tx.succeeded:
            logger.debug(f"Ignoring failed OfferCreate {tx.hash} ({tx.result})")
            self.skipped_count += 1
            return None

        account, sequence = self._identify(tx)

        offer = OrderbookOffer(
            offer_id=make_offer_id(account, sequence),
            owner=account,
            sequence=sequence,
            base_asset=None,
            quote_asset=None,
            ledger_index=ledger_index,
            ledger_hash=ledger_hash,
            tx_hash=tx.hash,
        )

        try:
            base = Amount.from_raw(tx.taker_gets)
            quote = Amount.from_raw(tx.taker_pays)
            offer.base_asset = str(base.asset)
            offer.quote_asset = str(quote.asset)

            base_amount = base.to_decimal()
            quote_amount = quote.to_decimal()
            if base_amount <= 0:
                raise ParseError(f"non-positive TakerGets amount: {base.value}")

            offer.quantity = base_amount
            offer.price = quote_amount / base_amount

        except ParseError as e:
            self.invalid_count += 1
            offer.status = OfferStatus.INVALID_PARSE
            offer.price = None
            offer.quantity = None
            offer.meta = self._diagnostics(tx, str(e))
            return offer

        self.parsed_count += 1
        return offer

    def parse_offer_cancel(self, tx: Transaction) -> Tuple[str, int]:
        """
        Resolve which offer an OfferCancel targets.

        Returns:
            (account, offer_sequence) of the offer to cancel

        Raises:
            ParseError: If the transaction is not a well-formed OfferCancel
        """
        if not isinstance(tx, OfferCancel):
            raise ParseError(f"not an OfferCancel: {tx.tx_type}", tx_hash=tx.hash)
        if not tx.account:
            raise ParseError("OfferCancel without Account", tx_hash=tx.hash)
        if tx.offer_sequence is None:
            raise ParseError("OfferCancel without OfferSequence", tx_hash=tx.hash)
        return tx.account, tx.offer_sequence

    @staticmethod
    def _identify(tx: OfferCreate) -> Tuple[str, int]:
        sequence = tx.effective_sequence
        if not tx.account:
            raise ParseError("OfferCreate without Account", tx_hash=tx.hash)
        if sequence is None:
            raise ParseError("OfferCreate without Sequence or TicketSequence", tx_hash=tx.hash)
        return tx.account, sequence

    @staticmethod
    def _diagnostics(tx: OfferCreate, error: str) -> Dict[str, Any]:
        return {
            "error": error,
            "taker_gets": tx.taker_gets,
            "taker_pays": tx.taker_pays,
            "flags": tx.flags,
        }
