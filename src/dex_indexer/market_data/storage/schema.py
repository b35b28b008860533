"""
DuckDB schema definitions for indexed market state.

Tables hold current state only (pools, offers) plus the per-ledger
checkpoints and the append-only connection audit trail. Amount-like
columns are stored as exact decimal text: XRPL token values exceed the
38-digit DECIMAL range.
"""

import duckdb
import logging

from ...core.exceptions import PersistenceError

logger = logging.getLogger(__name__)


LEDGER_CHECKPOINTS_TABLE = """
CREATE TABLE IF NOT EXISTS ledger_checkpoints (
    ledger_index BIGINT PRIMARY KEY,
    ledger_hash VARCHAR NOT NULL,
    close_time BIGINT NOT NULL,           -- Ripple epoch seconds
    close_time_human TIMESTAMP,           -- UTC
    transaction_count INTEGER NOT NULL,
    processing_duration_ms INTEGER NOT NULL,
    processed_at TIMESTAMP NOT NULL
);
"""

AMM_POOLS_TABLE = """
CREATE TABLE IF NOT EXISTS amm_pools (
    pool_id VARCHAR PRIMARY KEY,          -- sha256 of ordered asset pair
    asset1 VARCHAR NOT NULL,
    asset2 VARCHAR NOT NULL,
    reserve1 VARCHAR,
    reserve2 VARCHAR,
    fee_bps DECIMAL(6, 1),
    last_updated_ledger BIGINT NOT NULL,
    ledger_hash VARCHAR,
    updated_at TIMESTAMP NOT NULL
);
"""

ORDERBOOK_OFFERS_TABLE = """
CREATE TABLE IF NOT EXISTS orderbook_offers (
    offer_id VARCHAR PRIMARY KEY,         -- account:sequence
    owner VARCHAR NOT NULL,
    sequence BIGINT NOT NULL,
    base_asset VARCHAR,
    quote_asset VARCHAR,
    price VARCHAR,
    quantity VARCHAR,
    status VARCHAR NOT NULL,              -- 'active', 'cancelled', 'invalid_parse'
    ledger_index BIGINT NOT NULL,
    ledger_hash VARCHAR,
    tx_hash VARCHAR,
    meta VARCHAR,                         -- JSON diagnostics
    updated_at TIMESTAMP NOT NULL
);
"""

CONNECTION_EVENTS_SEQUENCE = """
CREATE SEQUENCE IF NOT EXISTS connection_events_id_seq;
"""

CONNECTION_EVENTS_TABLE = """
CREATE TABLE IF NOT EXISTS connection_events (
    id BIGINT PRIMARY KEY DEFAULT nextval('connection_events_id_seq'),
    ts TIMESTAMP NOT NULL,
    service VARCHAR NOT NULL,             -- 'database', 'rippled-ws'
    event VARCHAR NOT NULL,               -- 'attempt', 'success', 'failure', 'retry'
    attempt INTEGER NOT NULL,             -- 1-based
    error VARCHAR,
    duration_ms INTEGER,
    metadata VARCHAR                      -- JSON
);
"""

CONNECTION_EVENTS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_connection_events_service_ts ON connection_events(service, ts);
"""

TABLES = ["ledger_checkpoints", "amm_pools", "orderbook_offers", "connection_events"]


def create_all_tables(conn: duckdb.DuckDBPyConnection) -> None:
    """
    Create all tables and indexes.

    Args:
        conn: DuckDB connection

    Raises:
        PersistenceError: If any DDL statement fails
    """
    try:
        conn.execute(LEDGER_CHECKPOINTS_TABLE)
        logger.debug("Created ledger_checkpoints table")

        conn.execute(AMM_POOLS_TABLE)
        conn.execute(ORDERBOOK_OFFERS_TABLE)
        logger.debug("Created market state tables")

        conn.execute(CONNECTION_EVENTS_SEQUENCE)
        conn.execute(CONNECTION_EVENTS_TABLE)
        conn.execute(CONNECTION_EVENTS_INDEX)
        logger.debug("Created connection_events table and index")

        logger.info("All tables created successfully")

    except duckdb.Error as e:
        logger.error(f"Error creating tables: {e}")
        raise PersistenceError(f"schema creation failed: {e}") from e


def get_table_stats(conn: duckdb.DuckDBPyConnection) -> dict:
    """
    Get row counts per table.

    Args:
        conn: DuckDB connection

    Returns:
        Dict of table name -> row count
    """
    stats = {}
    try:
        for table in TABLES:
            result = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
            stats[table] = result[0] if result else 0
    except duckdb.Error as e:
        logger.error(f"Error getting table stats: {e}")
        raise PersistenceError(f"table stats failed: {e}") from e
    return stats
