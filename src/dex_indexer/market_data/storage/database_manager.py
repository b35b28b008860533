"""
Indexer Store - DuckDB-backed persistence of market state.

One database holds checkpoints, AMM pools, order-book offers and the
connection audit trail. All calls are synchronous and serialized through a
lock; the live pipeline and the backfill worker share a single store.

DATABASE_URL forms:
    duckdb:///var/lib/indexer/dex.duckdb   (absolute path)
    duckdb://data/dex.duckdb               (relative path)
    duckdb://:memory:                      (in-memory, tests)
    data/dex.duckdb                        (bare path)
"""

import duckdb
import json
import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from ...core.exceptions import ConfigError, PersistenceError
from ..models import (
    AMMPool,
    ConnectionEvent,
    LedgerCheckpoint,
    OfferStatus,
    OrderbookOffer,
    make_offer_id,
)
from .queries import (
    cancel_offer_query,
    execute_query,
    execute_write,
    get_active_offers_query,
    get_amm_pool_query,
    get_checkpoint_query,
    get_connection_events_query,
    get_last_checkpoint_query,
    get_offer_query,
    insert_connection_event_query,
    list_amm_pools_query,
    upsert_amm_pool_query,
    upsert_checkpoint_query,
    upsert_offer_query,
)
from .schema import create_all_tables, get_table_stats

logger = logging.getLogger(__name__)

DUCKDB_SCHEME = "duckdb://"
MEMORY_DATABASE = ":memory:"


def resolve_database_path(database_url: str) -> str:
    """
    Translate a DATABASE_URL into a DuckDB database path.

    Args:
        database_url: duckdb:// URL or bare filesystem path

    Returns:
        Path string accepted by duckdb.connect()

    Raises:
        ConfigError: If the URL is empty or uses another scheme
    """
    if not database_url or not database_url.strip():
        raise ConfigError("DATABASE_URL is empty")

    url = database_url.strip()
    if url.startswith(DUCKDB_SCHEME):
        path = url[len(DUCKDB_SCHEME):]
        if not path:
            raise ConfigError(f"DATABASE_URL has no path: {database_url}")
        return path

    if "://" in url:
        scheme = url.split("://", 1)[0]
        raise ConfigError(f"Unsupported DATABASE_URL scheme '{scheme}' (expected duckdb://)")

    return url


def _utc_now() -> datetime:
    # TIMESTAMP columns hold naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _dec_text(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _text_dec(value: Optional[str]) -> Optional[Decimal]:
    return None if value is None else Decimal(value)


class IndexerStore:
    """
    Durable store for the indexer.

    Every write is an upsert so retries and replays are idempotent:
    - checkpoints are overwritten by ledger_index
    - pools are replaced unless the stored row is from a newer ledger
    - offers are refreshed unless already cancelled

    Example:
        with IndexerStore("duckdb:///data/dex.duckdb") as store:
            store.save_checkpoint(checkpoint)
            last = store.get_last_checkpoint()
    """

    def __init__(self, database_url: str):
        """
        Initialize the store (does not open the database).

        Args:
            database_url: DATABASE_URL value

        Raises:
            ConfigError: If the URL cannot be resolved to a DuckDB path
        """
        self.database_url = database_url
        self.db_path = resolve_database_path(database_url)
        self._conn: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def connect(self) -> None:
        """
        Open the database and create the schema.

        Raises:
            PersistenceError: If the database cannot be opened or initialized
        """
        with self._lock:
            if self._conn is not None:
                return

            try:
                if self.db_path != MEMORY_DATABASE:
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                conn = duckdb.connect(self.db_path)
            except (duckdb.Error, OSError) as e:
                logger.error(f"Error opening database {self.db_path}: {e}")
                raise PersistenceError(f"cannot open {self.db_path}: {e}") from e

            try:
                create_all_tables(conn)
            except PersistenceError:
                conn.close()
                raise

            self._conn = conn
            logger.info(f"✓ Store connected: {self.db_path}")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.close()
                logger.info(f"Closed store: {self.db_path}")
            except duckdb.Error as e:
                logger.error(f"Error closing store {self.db_path}: {e}")
            finally:
                self._conn = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def _connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise PersistenceError("store is not connected")
        return self._conn

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ========================================================================
    # Checkpoints
    # ========================================================================

    def get_checkpoint(self, ledger_index: int) -> Optional[LedgerCheckpoint]:
        """
        Get the checkpoint for one ledger.

        Args:
            ledger_index: Ledger to look up

        Returns:
            LedgerCheckpoint, or None if the ledger was never processed
        """
        with self._lock:
            rows = execute_query(self._connection(), get_checkpoint_query(), [ledger_index])
        return self._row_to_checkpoint(rows[0]) if rows else None

    def get_last_checkpoint(self) -> Optional[LedgerCheckpoint]:
        """Get the checkpoint with the highest ledger index, if any."""
        with self._lock:
            rows = execute_query(self._connection(), get_last_checkpoint_query())
        return self._row_to_checkpoint(rows[0]) if rows else None

    def save_checkpoint(self, checkpoint: LedgerCheckpoint) -> None:
        """
        Record that a ledger has been processed (overwrites by index).

        Raises:
            PersistenceError: If the write fails
        """
        params = [
            checkpoint.ledger_index,
            checkpoint.ledger_hash,
            checkpoint.close_time,
            _naive_utc(checkpoint.close_time_human),
            checkpoint.transaction_count,
            checkpoint.processing_duration_ms,
            _utc_now(),
        ]
        with self._lock:
            execute_write(self._connection(), upsert_checkpoint_query(), params)

    @staticmethod
    def _row_to_checkpoint(row: tuple) -> LedgerCheckpoint:
        return LedgerCheckpoint(
            ledger_index=row[0],
            ledger_hash=row[1],
            close_time=row[2],
            close_time_human=_as_utc(row[3]),
            transaction_count=row[4],
            processing_duration_ms=row[5],
        )

    # ========================================================================
    # AMM Pools
    # ========================================================================

    def upsert_amm_pool(self, pool: AMMPool) -> None:
        """
        Insert or replace a pool's current state.

        A write from an older ledger than the stored one is ignored; None
        reserves or fee keep the stored values.

        Raises:
            PersistenceError: If the write fails
        """
        params = [
            pool.pool_id,
            pool.asset1,
            pool.asset2,
            _dec_text(pool.reserve1),
            _dec_text(pool.reserve2),
            pool.fee_bps,
            pool.last_updated_ledger,
            pool.ledger_hash,
            _utc_now(),
        ]
        with self._lock:
            execute_write(self._connection(), upsert_amm_pool_query(), params)

    def get_amm_pool(self, pool_id: str) -> Optional[AMMPool]:
        with self._lock:
            rows = execute_query(self._connection(), get_amm_pool_query(), [pool_id])
        return self._row_to_pool(rows[0]) if rows else None

    def list_amm_pools(self) -> List[AMMPool]:
        with self._lock:
            rows = execute_query(self._connection(), list_amm_pools_query())
        return [self._row_to_pool(row) for row in rows]

    @staticmethod
    def _row_to_pool(row: tuple) -> AMMPool:
        return AMMPool(
            pool_id=row[0],
            asset1=row[1],
            asset2=row[2],
            reserve1=_text_dec(row[3]),
            reserve2=_text_dec(row[4]),
            fee_bps=Decimal(row[5]) if row[5] is not None else None,
            last_updated_ledger=row[6],
            ledger_hash=row[7],
        )

    # ========================================================================
    # Order-book Offers
    # ========================================================================

    def upsert_offer(self, offer: OrderbookOffer) -> None:
        """
        Insert or refresh an offer. Cancelled offers stay cancelled.

        Raises:
            PersistenceError: If the write fails
        """
        params = [
            offer.offer_id,
            offer.owner,
            offer.sequence,
            offer.base_asset,
            offer.quote_asset,
            _dec_text(offer.price),
            _dec_text(offer.quantity),
            OfferStatus(offer.status).value,
            offer.ledger_index,
            offer.ledger_hash,
            offer.tx_hash,
            json.dumps(offer.meta or {}),
            _utc_now(),
        ]
        with self._lock:
            execute_write(self._connection(), upsert_offer_query(), params)

    def cancel_offer(self, account: str, sequence: int, ledger_index: int) -> bool:
        """
        Cancel the active offer created by (account, sequence).

        Args:
            account: Offer owner
            sequence: Sequence of the OfferCreate that placed the offer
            ledger_index: Ledger containing the OfferCancel

        Returns:
            True if an active offer was cancelled, False if none matched

        Raises:
            PersistenceError: If the write fails
        """
        offer_id = make_offer_id(account, sequence)
        with self._lock:
            rows = execute_query(
                self._connection(),
                cancel_offer_query(),
                [ledger_index, _utc_now(), offer_id]
            )
        return len(rows) > 0

    def get_offer(self, offer_id: str) -> Optional[OrderbookOffer]:
        with self._lock:
            rows = execute_query(self._connection(), get_offer_query(), [offer_id])
        return self._row_to_offer(rows[0]) if rows else None

    def get_active_offers(self, base_asset: str, quote_asset: str) -> List[OrderbookOffer]:
        """
        Active offers selling base_asset for quote_asset.

        Read API for downstream consumers of the order book (the routing
        service); the ingestion path itself never reads offers back.

        Args:
            base_asset: Asset string of the side being sold (TakerGets)
            quote_asset: Asset string of the side being bought (TakerPays)

        Returns:
            Offers in the order they were placed
        """
        with self._lock:
            rows = execute_query(
                self._connection(),
                get_active_offers_query(),
                [base_asset, quote_asset]
            )
        return [self._row_to_offer(row) for row in rows]

    @staticmethod
    def _row_to_offer(row: tuple) -> OrderbookOffer:
        return OrderbookOffer(
            offer_id=row[0],
            owner=row[1],
            sequence=row[2],
            base_asset=row[3],
            quote_asset=row[4],
            price=_text_dec(row[5]),
            quantity=_text_dec(row[6]),
            status=OfferStatus(row[7]),
            ledger_index=row[8],
            ledger_hash=row[9],
            tx_hash=row[10],
            meta=json.loads(row[11]) if row[11] else {},
        )

    # ========================================================================
    # Connection Audit
    # ========================================================================

    def log_connection_event(
        self,
        service: str,
        event: str,
        attempt: int,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Append a connection audit event.

        Best effort: failures are logged as warnings and never raised.
        """
        try:
            params = [
                _utc_now(),
                service,
                getattr(event, "value", event),
                attempt,
                error,
                duration_ms,
                json.dumps(metadata or {}, default=str),
            ]
            with self._lock:
                execute_write(self._connection(), insert_connection_event_query(), params)
        except (PersistenceError, TypeError, ValueError) as e:
            logger.warning(f"⚠️  Failed to record connection event {service}/{event}: {e}")

    def get_connection_events(self, service: Optional[str] = None) -> List[ConnectionEvent]:
        """Audit events in insertion order, optionally for one service."""
        with self._lock:
            if service:
                rows = execute_query(
                    self._connection(), get_connection_events_query(by_service=True), [service]
                )
            else:
                rows = execute_query(self._connection(), get_connection_events_query())
        return [
            ConnectionEvent(
                ts=_as_utc(row[0]),
                service=row[1],
                event=row[2],
                attempt=row[3],
                error=row[4],
                duration_ms=row[5],
                metadata=json.loads(row[6]) if row[6] else {},
            )
            for row in rows
        ]

    # ========================================================================
    # Stats
    # ========================================================================

    def get_stats(self) -> Dict[str, int]:
        """Row counts per table."""
        with self._lock:
            return get_table_stats(self._connection())
