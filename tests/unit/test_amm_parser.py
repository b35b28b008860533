"""
Unit tests for AMMParser.

Tests:
1. AMMCreate -> pool with reserves and fee in bps
2. Canonical asset ordering and pool ids
3. Deposit / withdraw reserves from metadata
4. Not-applicable and failed transactions
5. Malformed AMM transactions
"""

import pytest
from decimal import Decimal

from dex_indexer.core.exceptions import ParseError
from dex_indexer.market_data.stream.xrpl import AMMParser, make_pool_id
from dex_indexer.market_data.stream.xrpl.models import decode_transaction

from builders import (
    ISSUER,
    amm_create,
    amm_deposit,
    amm_state_meta,
    offer_create,
    payment,
    success_meta,
    usd,
)

USD_ASSET = f"USD.{ISSUER}"


@pytest.fixture
def parser():
    return AMMParser()


def test_amm_create_builds_pool(parser):
    tx = decode_transaction(amm_create(amount="1000000000", amount2=usd("500"), trading_fee=500))

    pool = parser.parse_transaction(tx, 105, "HASH105")

    # "USD.r..." sorts before "XRP"
    assert pool.asset1 == USD_ASSET
    assert pool.asset2 == "XRP"
    assert pool.reserve1 == Decimal("500")
    assert pool.reserve2 == Decimal("1000")
    assert pool.fee_bps == Decimal("50")
    assert pool.last_updated_ledger == 105
    assert pool.ledger_hash == "HASH105"
    assert parser.parsed_count == 1


def test_pool_id_ignores_asset_order(parser):
    forward = parser.parse_transaction(
        decode_transaction(amm_create(amount="1000000", amount2=usd("5"))), 1, "H"
    )
    reverse = parser.parse_transaction(
        decode_transaction(amm_create(amount=usd("5"), amount2="1000000")), 1, "H"
    )

    assert forward.pool_id == reverse.pool_id
    assert forward.pool_id == make_pool_id("XRP", USD_ASSET)
    assert len(forward.pool_id) == 64


def test_trading_fee_conversion(parser):
    pool = parser.parse_transaction(decode_transaction(amm_create(trading_fee=1)), 1, "H")
    assert pool.fee_bps == Decimal("0.1")

    pool = parser.parse_transaction(decode_transaction(amm_create(trading_fee=1000)), 1, "H")
    assert pool.fee_bps == Decimal("100")


@pytest.mark.parametrize("fee", [None, "abc", -1, 1001])
def test_invalid_trading_fee_raises(parser, fee):
    tx = decode_transaction(amm_create(trading_fee=fee))

    with pytest.raises(ParseError) as exc_info:
        parser.parse_transaction(tx, 1, "H")

    assert exc_info.value.tx_hash == tx.hash
    assert parser.error_count == 1


def test_amm_create_with_missing_amount_raises(parser):
    raw = amm_create()
    del raw["Amount2"]

    with pytest.raises(ParseError):
        parser.parse_transaction(decode_transaction(raw), 1, "H")


def test_amm_create_with_identical_assets_raises(parser):
    tx = decode_transaction(amm_create(amount="100", amount2="200"))

    with pytest.raises(ParseError):
        parser.parse_transaction(tx, 1, "H")


def test_deposit_reads_reserves_from_metadata(parser):
    tx = decode_transaction(amm_deposit(meta=amm_state_meta("2000000000", "750.5", trading_fee=300)))

    pool = parser.parse_transaction(tx, 200, "H200")

    assert pool.asset1 == USD_ASSET
    assert pool.asset2 == "XRP"
    assert pool.reserve1 == Decimal("750.5")
    assert pool.reserve2 == Decimal("2000")
    assert pool.fee_bps == Decimal("30")
    assert pool.pool_id == make_pool_id("XRP", USD_ASSET)


def test_withdraw_without_metadata_leaves_state_unknown(parser):
    tx = decode_transaction(amm_deposit(tx_type="AMMWithdraw"))

    pool = parser.parse_transaction(tx, 201, "H201")

    assert pool.reserve1 is None
    assert pool.reserve2 is None
    assert pool.fee_bps is None
    assert pool.last_updated_ledger == 201


def test_deposit_missing_asset_raises(parser):
    raw = amm_deposit()
    del raw["Asset2"]

    with pytest.raises(ParseError):
        parser.parse_transaction(decode_transaction(raw), 1, "H")


@pytest.mark.parametrize("raw", [offer_create(), payment()])
def test_non_amm_transactions_are_not_applicable(parser, raw):
    assert parser.parse_transaction(decode_transaction(raw), 1, "H") is None
    assert parser.skipped_count == 1
    assert parser.error_count == 0


def test_failed_amm_transaction_is_ignored(parser):
    tx = decode_transaction(amm_create(meta=success_meta(result="tecAMM_BALANCE")))

    assert parser.parse_transaction(tx, 1, "H") is None


def test_malformed_trust_line_in_metadata_raises(parser):
    meta = success_meta([
        {"ModifiedNode": {"LedgerEntryType": "AMM", "FinalFields": {"Account": "rAMM"}}},
        {"ModifiedNode": {
            "LedgerEntryType": "RippleState",
            "FinalFields": {"HighLimit": "bogus", "LowLimit": {}, "Balance": {}},
        }},
    ])

    with pytest.raises(ParseError):
        parser.parse_transaction(decode_transaction(amm_deposit(meta=meta)), 500, "H")
    assert parser.error_count == 1
