"""
Unit tests for OrderbookParser.

Tests:
1. OfferCreate -> active offer with price and quantity
2. Decode failures -> invalid_parse with diagnostics
3. OfferCancel resolution
4. Identification errors
"""

import pytest
from decimal import Decimal

from dex_indexer.core.exceptions import ParseError
from dex_indexer.market_data.models import OfferStatus
from dex_indexer.market_data.stream.xrpl import OrderbookParser
from dex_indexer.market_data.stream.xrpl.models import decode_transaction

from builders import (
    ALICE,
    ISSUER,
    amm_create,
    offer_cancel,
    offer_create,
    success_meta,
    usd,
)


@pytest.fixture
def parser():
    return OrderbookParser()


def test_offer_create_builds_active_offer(parser):
    # Sells 100 XRP for 50 USD
    tx = decode_transaction(offer_create(sequence=30, taker_gets="100000000", taker_pays=usd("50")))

    offer = parser.parse_transaction(tx, 105, "H105")

    assert offer.offer_id == f"{ALICE}:30"
    assert offer.owner == ALICE
    assert offer.sequence == 30
    assert offer.status == OfferStatus.ACTIVE
    assert offer.base_asset == "XRP"
    assert offer.quote_asset == f"USD.{ISSUER}"
    assert offer.quantity == Decimal("100")
    assert offer.price == Decimal("0.5")
    assert offer.ledger_index == 105
    assert offer.tx_hash == tx.hash
    assert parser.parsed_count == 1


def test_token_for_xrp_offer_price(parser):
    tx = decode_transaction(offer_create(taker_gets=usd("20"), taker_pays="50000000"))

    offer = parser.parse_transaction(tx, 1, "H")

    assert offer.base_asset == f"USD.{ISSUER}"
    assert offer.quote_asset == "XRP"
    assert offer.price == Decimal("2.5")


def test_ticketed_offer_id_uses_ticket_sequence(parser):
    tx = decode_transaction(offer_create(sequence=0, ticket_sequence=900))

    offer = parser.parse_transaction(tx, 1, "H")

    assert offer.offer_id == f"{ALICE}:900"


def test_non_numeric_amount_marks_offer_invalid(parser):
    tx = decode_transaction(offer_create(taker_pays=usd("not-a-number")))

    offer = parser.parse_transaction(tx, 1, "H")

    assert offer.status == OfferStatus.INVALID_PARSE
    assert offer.price is None
    assert offer.quantity is None
    assert "non-numeric" in offer.meta["error"]
    assert offer.meta["taker_pays"] == usd("not-a-number")
    assert offer.meta["taker_gets"] == "100000000"
    assert parser.invalid_count == 1


def test_zero_base_amount_marks_offer_invalid(parser):
    tx = decode_transaction(offer_create(taker_gets="0"))

    offer = parser.parse_transaction(tx, 1, "H")

    assert offer.status == OfferStatus.INVALID_PARSE
    assert offer.price is None


def test_missing_amount_marks_offer_invalid(parser):
    raw = offer_create()
    del raw["TakerGets"]

    offer = parser.parse_transaction(decode_transaction(raw), 1, "H")

    assert offer.status == OfferStatus.INVALID_PARSE
    assert offer.meta["taker_gets"] is None


def test_offer_without_account_raises(parser):
    raw = offer_create()
    del raw["Account"]

    with pytest.raises(ParseError):
        parser.parse_transaction(decode_transaction(raw), 1, "H")


def test_offer_without_sequence_raises(parser):
    raw = offer_create()
    del raw["Sequence"]

    with pytest.raises(ParseError):
        parser.parse_transaction(decode_transaction(raw), 1, "H")


def test_other_transactions_are_not_applicable(parser):
    assert parser.parse_transaction(decode_transaction(amm_create()), 1, "H") is None
    assert parser.parse_transaction(decode_transaction(offer_cancel()), 1, "H") is None
    assert parser.skipped_count == 2


def test_failed_offer_create_is_ignored(parser):
    tx = decode_transaction(offer_create(meta=success_meta(result="tecUNFUNDED_OFFER")))

    assert parser.parse_transaction(tx, 1, "H") is None


def test_parse_offer_cancel(parser):
    tx = decode_transaction(offer_cancel(account=ALICE, offer_sequence=30))

    assert parser.parse_offer_cancel(tx) == (ALICE, 30)


def test_parse_offer_cancel_without_sequence_raises(parser):
    tx = decode_transaction(offer_cancel(offer_sequence=None))

    with pytest.raises(ParseError):
        parser.parse_offer_cancel(tx)


def test_parse_offer_cancel_rejects_other_kinds(parser):
    with pytest.raises(ParseError):
        parser.parse_offer_cancel(decode_transaction(offer_create()))
