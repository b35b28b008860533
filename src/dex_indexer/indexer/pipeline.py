"""
Ledger ingestion pipeline.

Processes one closed ledger at a time:
1. Duplicate guard (checkpoint already present -> skip)
2. Continuity check against the previous checkpoint (advisory)
3. Fan-out of every transaction to the AMM and order-book parsers
4. Checkpoint write, last, so a crash mid-ledger means a full replay

Replays are safe because every store write is an idempotent upsert.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from ..core.exceptions import ParseError, PersistenceError
from ..market_data.models import LedgerCheckpoint, OfferStatus
from ..market_data.storage import IndexerStore
from ..market_data.stream.xrpl import AMMParser, OrderbookParser
from ..market_data.stream.xrpl.models import LedgerResponse, OfferCancel, Transaction
from ..utils.logger import IndexerLogger

logger = logging.getLogger(__name__)


@dataclass
class PipelineStats:
    """Counters for one processing path."""
    ledgers_processed: int = 0
    duplicates_skipped: int = 0
    transactions_seen: int = 0
    pools_updated: int = 0
    offers_upserted: int = 0
    offers_invalid: int = 0
    offers_cancelled: int = 0
    cancels_unmatched: int = 0
    parse_errors: int = 0
    persistence_errors: int = 0
    unexpected_errors: int = 0
    continuity_warnings: int = 0


class LedgerProcessor:
    """
    Applies the DEX side effects of closed ledgers to the store.

    The live path and the backfill worker each own one processor (and
    their own parsers) while sharing the store.

    Example:
        processor = LedgerProcessor(store, name="live", verbose=True)
        processed = processor.process_ledger(ledger)
    """

    def __init__(
        self,
        store: IndexerStore,
        amm_parser: Optional[AMMParser] = None,
        orderbook_parser: Optional[OrderbookParser] = None,
        name: str = "live",
        verbose: bool = False
    ):
        """
        Initialize processor.

        Args:
            store: Shared indexer store
            amm_parser: AMM parser (a fresh one if None)
            orderbook_parser: Order-book parser (a fresh one if None)
            name: Processing path name used in log lines
            verbose: Emit per-ledger and per-transaction detail
        """
        self.store = store
        self.amm_parser = amm_parser or AMMParser()
        self.orderbook_parser = orderbook_parser or OrderbookParser()
        self.name = name
        self.log = IndexerLogger(__name__, verbose)
        self.stats = PipelineStats()

    # ========================================================================
    # Ledger processing
    # ========================================================================

    def process_ledger(self, ledger: LedgerResponse) -> bool:
        """
        Process one closed ledger.

        Args:
            ledger: Ledger with decoded transactions

        Returns:
            True if the ledger was processed, False if it was already
            checkpointed and skipped

        Raises:
            PersistenceError: If the checkpoint cannot be written
        """
        start_time = time.perf_counter()
        index = ledger.ledger_index

        if self._read_checkpoint(index) is not None:
            self.stats.duplicates_skipped += 1
            self.log.verbose(f"[{self.name}] Ledger {index} already processed, skipping",
                             ledger_index=index)
            return False

        self._check_continuity(ledger)

        for tx in ledger.transactions:
            self.stats.transactions_seen += 1
            self._process_transaction(tx, ledger)

        duration_ms = int((time.perf_counter() - start_time) * 1000)
        checkpoint = LedgerCheckpoint(
            ledger_index=index,
            ledger_hash=ledger.ledger_hash,
            close_time=ledger.close_time,
            close_time_human=ledger.close_time_human,
            transaction_count=ledger.txn_count,
            processing_duration_ms=duration_ms,
        )

        try:
            self.store.save_checkpoint(checkpoint)
        except PersistenceError as e:
            self.log.ledger_event(
                index, f"❌ [{self.name}] Failed to save checkpoint for ledger {index}: {e}",
                level=logging.ERROR
            )
            raise

        self.stats.ledgers_processed += 1
        self.log.verbose(
            f"[{self.name}] ✓ Ledger {index} processed: {ledger.txn_count} txs in {duration_ms}ms",
            ledger_index=index,
            execution_time=duration_ms / 1000
        )
        return True

    def _read_checkpoint(self, ledger_index: int) -> Optional[LedgerCheckpoint]:
        try:
            return self.store.get_checkpoint(ledger_index)
        except PersistenceError as e:
            # Treated as absent
            self.log.ledger_event(
                ledger_index,
                f"⚠️  [{self.name}] Checkpoint read failed for ledger {ledger_index}: {e}",
                level=logging.WARNING
            )
            return None

    def _check_continuity(self, ledger: LedgerResponse) -> None:
        previous_index = ledger.ledger_index - 1
        previous = self._read_checkpoint(previous_index)

        if previous is None:
            self.log.verbose(
                f"[{self.name}] No checkpoint for previous ledger {previous_index}",
                ledger_index=ledger.ledger_index
            )
            return

        if ledger.parent_hash and previous.ledger_hash != ledger.parent_hash:
            self.stats.continuity_warnings += 1
            self.log.ledger_event(
                ledger.ledger_index,
                f"⚠️  [{self.name}] Hash chain mismatch at ledger {ledger.ledger_index}: "
                f"parent_hash={ledger.parent_hash} but checkpoint {previous_index} "
                f"has {previous.ledger_hash}",
                level=logging.WARNING
            )

    # ========================================================================
    # Transaction fan-out
    # ========================================================================

    def _process_transaction(self, tx: Transaction, ledger: LedgerResponse) -> None:
        """Apply one transaction; errors are logged and never abort the ledger."""
        index = ledger.ledger_index

        try:
            pool = self.amm_parser.parse_transaction(tx, index, ledger.ledger_hash)
            if pool is not None:
                self.store.upsert_amm_pool(pool)
                self.stats.pools_updated += 1
                self.log.verbose(
                    f"[{self.name}] AMM pool {pool.asset1}/{pool.asset2} updated "
                    f"({tx.tx_type})",
                    ledger_index=index, tx_hash=tx.hash
                )
        except ParseError as e:
            self.stats.parse_errors += 1
            self.log.transaction_error(index, e.tx_hash or tx.hash, f"AMM parse failed: {e}")
        except PersistenceError as e:
            self.stats.persistence_errors += 1
            self.log.transaction_error(index, tx.hash, f"AMM pool write failed: {e}")
        except Exception as e:
            self.stats.unexpected_errors += 1
            self.log.transaction_error(index, tx.hash, f"AMM handling failed: {e!r}")

        try:
            offer = self.orderbook_parser.parse_transaction(tx, index, ledger.ledger_hash)
            if offer is not None:
                self.store.upsert_offer(offer)
                self.stats.offers_upserted += 1
                if offer.status == OfferStatus.INVALID_PARSE:
                    self.stats.offers_invalid += 1
                    self.log.verbose(
                        f"[{self.name}] Offer {offer.offer_id} stored as invalid_parse: "
                        f"{offer.meta.get('error')}",
                        ledger_index=index, tx_hash=tx.hash
                    )
        except ParseError as e:
            self.stats.parse_errors += 1
            self.log.transaction_error(index, e.tx_hash or tx.hash, f"offer parse failed: {e}")
        except PersistenceError as e:
            self.stats.persistence_errors += 1
            self.log.transaction_error(index, tx.hash, f"offer write failed: {e}")
        except Exception as e:
            self.stats.unexpected_errors += 1
            self.log.transaction_error(index, tx.hash, f"offer handling failed: {e!r}")

        if isinstance(tx, OfferCancel) and tx.succeeded:
            self._apply_cancel(tx, index)

    def _apply_cancel(self, tx: OfferCancel, ledger_index: int) -> None:
        try:
            account, sequence = self.orderbook_parser.parse_offer_cancel(tx)
            if self.store.cancel_offer(account, sequence, ledger_index):
                self.stats.offers_cancelled += 1
                self.log.verbose(
                    f"[{self.name}] Offer {account}:{sequence} cancelled",
                    ledger_index=ledger_index, tx_hash=tx.hash
                )
            else:
                self.stats.cancels_unmatched += 1
                self.log.verbose(
                    f"[{self.name}] OfferCancel {tx.hash}: no active offer {account}:{sequence}",
                    ledger_index=ledger_index, tx_hash=tx.hash
                )
        except ParseError as e:
            self.stats.parse_errors += 1
            self.log.transaction_error(ledger_index, e.tx_hash or tx.hash, f"cancel parse failed: {e}")
        except PersistenceError as e:
            self.stats.persistence_errors += 1
            self.log.transaction_error(ledger_index, tx.hash, f"cancel write failed: {e}")
        except Exception as e:
            self.stats.unexpected_errors += 1
            self.log.transaction_error(ledger_index, tx.hash, f"cancel handling failed: {e!r}")

    def get_stats(self) -> dict:
        """Processing counters plus parser counters."""
        return {
            **self.stats.__dict__,
            'amm_parsed': self.amm_parser.parsed_count,
            'offers_parsed': self.orderbook_parser.parsed_count,
        }
