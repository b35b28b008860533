"""
SQL templates for the indexer store.

Every write is an upsert keyed by the table's primary key so that replays
(reconnects, live/backfill overlap) converge on the same row state.
"""

import logging
from typing import Any, List, Optional

import duckdb

from ...core.exceptions import PersistenceError

logger = logging.getLogger(__name__)


# ============================================================================
# Checkpoints
# ============================================================================

def upsert_checkpoint_query() -> str:
    """Insert or overwrite the checkpoint of one ledger."""
    return """
        INSERT INTO ledger_checkpoints
        (ledger_index, ledger_hash, close_time, close_time_human,
         transaction_count, processing_duration_ms, processed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (ledger_index) DO UPDATE SET
            ledger_hash = EXCLUDED.ledger_hash,
            close_time = EXCLUDED.close_time,
            close_time_human = EXCLUDED.close_time_human,
            transaction_count = EXCLUDED.transaction_count,
            processing_duration_ms = EXCLUDED.processing_duration_ms,
            processed_at = EXCLUDED.processed_at
    """


def get_checkpoint_query() -> str:
    return """
        SELECT ledger_index, ledger_hash, close_time, close_time_human,
               transaction_count, processing_duration_ms
        FROM ledger_checkpoints
        WHERE ledger_index = ?
    """


def get_last_checkpoint_query() -> str:
    return """
        SELECT ledger_index, ledger_hash, close_time, close_time_human,
               transaction_count, processing_duration_ms
        FROM ledger_checkpoints
        ORDER BY ledger_index DESC
        LIMIT 1
    """


# ============================================================================
# AMM Pools
# ============================================================================

def upsert_amm_pool_query() -> str:
    """
    Replace a pool's state unless the stored row comes from a newer ledger.

    NULL reserves or fee mean "not known from this transaction" and keep
    the stored value.
    """
    return """
        INSERT INTO amm_pools
        (pool_id, asset1, asset2, reserve1, reserve2, fee_bps,
         last_updated_ledger, ledger_hash, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (pool_id) DO UPDATE SET
            reserve1 = COALESCE(EXCLUDED.reserve1, reserve1),
            reserve2 = COALESCE(EXCLUDED.reserve2, reserve2),
            fee_bps = COALESCE(EXCLUDED.fee_bps, fee_bps),
            last_updated_ledger = EXCLUDED.last_updated_ledger,
            ledger_hash = EXCLUDED.ledger_hash,
            updated_at = EXCLUDED.updated_at
        WHERE last_updated_ledger <= EXCLUDED.last_updated_ledger
    """


def get_amm_pool_query() -> str:
    return """
        SELECT pool_id, asset1, asset2, reserve1, reserve2, fee_bps,
               last_updated_ledger, ledger_hash
        FROM amm_pools
        WHERE pool_id = ?
    """


def list_amm_pools_query() -> str:
    return """
        SELECT pool_id, asset1, asset2, reserve1, reserve2, fee_bps,
               last_updated_ledger, ledger_hash
        FROM amm_pools
        ORDER BY asset1, asset2
    """


# ============================================================================
# Order-book Offers
# ============================================================================

def upsert_offer_query() -> str:
    """
    Insert or refresh an offer. A cancelled offer is never reopened.
    """
    return """
        INSERT INTO orderbook_offers
        (offer_id, owner, sequence, base_asset, quote_asset, price, quantity,
         status, ledger_index, ledger_hash, tx_hash, meta, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (offer_id) DO UPDATE SET
            base_asset = EXCLUDED.base_asset,
            quote_asset = EXCLUDED.quote_asset,
            price = EXCLUDED.price,
            quantity = EXCLUDED.quantity,
            status = EXCLUDED.status,
            ledger_index = EXCLUDED.ledger_index,
            ledger_hash = EXCLUDED.ledger_hash,
            tx_hash = EXCLUDED.tx_hash,
            meta = EXCLUDED.meta,
            updated_at = EXCLUDED.updated_at
        WHERE status <> 'cancelled'
    """


def cancel_offer_query() -> str:
    """Move an active offer to cancelled; returns the affected offer ids."""
    return """
        UPDATE orderbook_offers
        SET status = 'cancelled',
            ledger_index = ?,
            updated_at = ?
        WHERE offer_id = ? AND status = 'active'
        RETURNING offer_id
    """


def get_offer_query() -> str:
    return """
        SELECT offer_id, owner, sequence, base_asset, quote_asset, price,
               quantity, status, ledger_index, ledger_hash, tx_hash, meta
        FROM orderbook_offers
        WHERE offer_id = ?
    """


def get_active_offers_query() -> str:
    return """
        SELECT offer_id, owner, sequence, base_asset, quote_asset, price,
               quantity, status, ledger_index, ledger_hash, tx_hash, meta
        FROM orderbook_offers
        WHERE status = 'active' AND base_asset = ? AND quote_asset = ?
        ORDER BY ledger_index
    """


# ============================================================================
# Connection Audit
# ============================================================================

def insert_connection_event_query() -> str:
    return """
        INSERT INTO connection_events
        (ts, service, event, attempt, error, duration_ms, metadata)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """


def get_connection_events_query(by_service: bool = False) -> str:
    where = "WHERE service = ?" if by_service else ""
    return f"""
        SELECT ts, service, event, attempt, error, duration_ms, metadata
        FROM connection_events
        {where}
        ORDER BY id
    """


# Helper functions to execute queries

def execute_query(
    conn: duckdb.DuckDBPyConnection,
    query: str,
    params: Optional[List[Any]] = None
) -> List[tuple]:
    """
    Execute a SQL query and return all rows.

    Raises:
        PersistenceError: If the statement fails
    """
    try:
        if params:
            return conn.execute(query, params).fetchall()
        return conn.execute(query).fetchall()
    except duckdb.Error as e:
        logger.error(f"Error executing query: {e}")
        logger.debug(f"Query: {query}")
        raise PersistenceError(str(e)) from e


def execute_write(
    conn: duckdb.DuckDBPyConnection,
    query: str,
    params: List[Any]
) -> None:
    """
    Execute an INSERT/UPDATE statement.

    Raises:
        PersistenceError: If the statement fails
    """
    try:
        conn.execute(query, params)
    except duckdb.Error as e:
        logger.debug(f"Query: {query}, Params: {params}")
        raise PersistenceError(str(e)) from e
