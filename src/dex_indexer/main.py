"""
Main entry point for the ledger indexer.

Startup sequence:
1. Load configuration (YAML -> env -> CLI) and set up logging
2. Open the store
3. Connect the live source, read server_info, subscribe to ledgers
4. Plan backfill from the last checkpoint and start the worker if needed
5. Run the primary loop until SIGINT/SIGTERM

Exit codes: 0 clean shutdown, 1 fatal startup failure, 2 invalid
configuration.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import time
from typing import Any, Dict, List, Optional

from . import __version__
from .config import DEFAULT_RIPPLED_WS, IndexerConfig, load_config
from .core.exceptions import ConfigError, IndexerError, PersistenceError
from .indexer import BackfillWorker, LedgerProcessor, SyncState, plan_backfill
from .market_data.models import ConnectionEventType
from .market_data.storage import IndexerStore
from .market_data.stream.xrpl import AMMParser, LedgerSource, OrderbookParser
from .market_data.stream.xrpl.models import LedgerResponse
from .utils.logger import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

DATABASE_SERVICE = "database"
LIVE_SUMMARY_INTERVAL = 100


def version_string() -> str:
    """Version plus build time (BUILD_TIME is set at image build)."""
    return f"dex-indexer {__version__} (built {os.getenv('BUILD_TIME', 'unknown')})"


# ============================================================================
# Indexer
# ============================================================================

class Indexer:
    """
    Live ingestion service.

    Owns the store, the live source and the live LedgerProcessor, and
    supervises the backfill worker when a small gap was found at startup.
    """

    def __init__(
        self,
        config: IndexerConfig,
        store: Optional[IndexerStore] = None,
        source: Optional[LedgerSource] = None,
        backfill_source: Optional[LedgerSource] = None
    ):
        """
        Initialize the indexer (no I/O).

        Args:
            config: Validated configuration
            store: Store (built from config.database_url if None)
            source: Live source (built from config if None)
            backfill_source: Source for the backfill worker (built by the
                worker if None)

        Raises:
            ConfigError: If the database URL is not usable
        """
        self.config = config
        self.store = store or IndexerStore(config.database_url)
        self.source = source or LedgerSource(
            config.rippled_ws,
            buffer_size=config.live_buffer_size,
            request_timeout=config.request_timeout,
            connect_timeout=config.connect_timeout,
            auto_reconnect=True,
            reconnect_initial_delay=config.reconnect_initial_delay,
            reconnect_max_delay=config.reconnect_max_delay,
            audit=self.store.log_connection_event,
            name="live",
        )
        self.backfill_source = backfill_source
        self.processor = LedgerProcessor(
            self.store,
            AMMParser(),
            OrderbookParser(),
            name="live",
            verbose=config.verbose
        )

        self.backfill: Optional[BackfillWorker] = None
        self.sync_state: Optional[SyncState] = None
        self._shutdown = asyncio.Event()
        self._stopped = False

        # Stats
        self.live_ledgers = 0
        self.stream_errors = 0

    # ========================================================================
    # Startup
    # ========================================================================

    async def start(self) -> None:
        """
        Run the startup sequence.

        Raises:
            PersistenceError: Store cannot be opened
            SourceConnectionError: Upstream handshake failed
            RPCError: server_info or subscribe failed
        """
        logger.info("=" * 70)
        logger.info(f"Starting {version_string()}")
        logger.info(f"  rippled:  {self.config.rippled_ws}")
        logger.info(f"  database: {self.store.db_path}")
        logger.info(f"  start ledger cutoff: {self.config.start_ledger}")
        logger.info("=" * 70)

        self._open_store()

        await self.source.connect()
        server_info = await self.source.get_server_info()
        logger.info(
            f"✓ rippled {server_info.build_version or '?'} state={server_info.server_state} "
            f"validated ledger {server_info.validated_ledger}"
        )

        # Subscribed before the gap is measured
        await self.source.subscribe()

        self._plan_backfill(server_info.validated_ledger)

    def _open_store(self) -> None:
        started = time.monotonic()
        try:
            self.store.connect()
        except PersistenceError as e:
            logger.critical(f"❌ Cannot open store {self.store.db_path}: {e}")
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        metadata = {"path": self.store.db_path}
        self.store.log_connection_event(
            DATABASE_SERVICE, ConnectionEventType.ATTEMPT.value, 1, metadata=metadata
        )
        self.store.log_connection_event(
            DATABASE_SERVICE, ConnectionEventType.SUCCESS.value, 1,
            duration_ms=duration_ms, metadata=metadata
        )

    def _plan_backfill(self, current_ledger: int) -> None:
        try:
            last = self.store.get_last_checkpoint()
        except PersistenceError as e:
            logger.warning(f"⚠️  Cannot read last checkpoint, skipping backfill: {e}")
            last = None

        plan = plan_backfill(
            last.ledger_index if last else None,
            current_ledger,
            self.config.start_ledger,
            self.config.small_gap_threshold
        )
        self.sync_state = plan.state

        if plan.state == SyncState.NO_CHECKPOINT:
            logger.info("No checkpoint found, starting with live ingestion only")
        elif plan.state == SyncState.CAUGHT_UP:
            logger.info(
                f"✓ Caught up (last checkpoint {plan.checkpoint_index}, "
                f"current {current_ledger})"
            )
        elif plan.state == SyncState.LARGE_GAP_SKIPPED:
            logger.warning(
                f"⚠️  Large gap: {plan.missing} ledgers missing since checkpoint "
                f"{plan.checkpoint_index} (threshold {self.config.small_gap_threshold}), "
                f"skipping backfill"
            )
        else:
            logger.info(
                f"🔄 Small gap: {plan.missing} ledgers missing, backfilling "
                f"{plan.start}-{plan.end - 1}"
            )
            self.backfill = BackfillWorker(
                self.config.rippled_ws,
                self.store,
                plan.start,
                plan.end,
                max_retries=self.config.backfill_max_retries,
                retry_delay=self.config.backfill_retry_delay,
                buffer_size=self.config.backfill_buffer_size,
                progress_interval=self.config.progress_interval,
                request_timeout=self.config.request_timeout,
                connect_timeout=self.config.connect_timeout,
                audit=self.store.log_connection_event,
                verbose=self.config.verbose,
                source=self.backfill_source,
            )
            self.backfill.start()

    # ========================================================================
    # Primary loop
    # ========================================================================

    def request_shutdown(self) -> None:
        """Ask the primary loop to stop after the in-flight ledger."""
        if not self._shutdown.is_set():
            logger.info("Shutdown requested")
            self._shutdown.set()

    async def run(self) -> None:
        """Multiplex shutdown, stream errors and ledgers until shutdown."""
        shutdown_wait = asyncio.create_task(self._shutdown.wait())
        ledger_get: Optional[asyncio.Task] = None
        error_get: Optional[asyncio.Task] = None
        backfill_task = self.backfill.task if self.backfill else None

        try:
            while not self._shutdown.is_set():
                if ledger_get is None:
                    ledger_get = asyncio.create_task(self.source.ledgers.get())
                if error_get is None:
                    error_get = asyncio.create_task(self.source.errors.get())

                waiting = {shutdown_wait, ledger_get, error_get}
                if backfill_task is not None:
                    waiting.add(backfill_task)

                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                if error_get in done:
                    self._handle_stream_error(error_get.result())
                    error_get = None

                if ledger_get in done:
                    self._handle_ledger(ledger_get.result())
                    ledger_get = None

                if backfill_task is not None and backfill_task in done:
                    self._report_backfill(backfill_task)
                    backfill_task = None

        finally:
            for task in (shutdown_wait, ledger_get, error_get):
                if task is not None and not task.done():
                    task.cancel()

        logger.info(f"Primary loop stopped after {self.live_ledgers} live ledgers")

    def _handle_ledger(self, ledger: LedgerResponse) -> None:
        try:
            if self.processor.process_ledger(ledger):
                self.live_ledgers += 1
                if self.live_ledgers % LIVE_SUMMARY_INTERVAL == 0:
                    stats = self.processor.get_stats()
                    logger.info(
                        f"✓ {self.live_ledgers} live ledgers processed (latest {ledger.ledger_index}), "
                        f"pools updated {stats['pools_updated']}, offers {stats['offers_upserted']}, "
                        f"cancelled {stats['offers_cancelled']}"
                    )
        except PersistenceError as e:
            logger.error(f"❌ Ledger {ledger.ledger_index} not checkpointed: {e}")
        except Exception as e:
            logger.error(
                f"❌ Ledger {ledger.ledger_index} processing failed: {e!r}",
                exc_info=True
            )

    def _handle_stream_error(self, error: Exception) -> None:
        self.stream_errors += 1
        logger.error(f"❌ Ledger stream error: {error}")

    def _report_backfill(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("⚠️  Backfill task was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"❌ Backfill task crashed: {error!r}")
            return
        result = task.result()
        if result.completed:
            logger.info(
                f"✓ Backfill finished: {result.processed} processed, {result.skipped} skipped, "
                f"{result.errors} errors"
            )
        else:
            logger.error(
                f"❌ Backfill aborted at ledger {result.failed_ledger}: {result.error} "
                f"(live ingestion continues)"
            )

    # ========================================================================
    # Shutdown
    # ========================================================================

    async def stop(self) -> None:
        """Abandon backfill, close the source and the store."""
        if self._stopped:
            return
        self._stopped = True

        if self.backfill is not None:
            await self.backfill.abandon()

        await self.source.close()
        self.store.close()
        logger.info("✓ Indexer stopped")


# ============================================================================
# CLI
# ============================================================================

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dex-indexer",
        description="Index XRPL DEX activity (AMM pools, order-book offers) into DuckDB",
    )
    parser.add_argument(
        "--rippled-ws",
        dest="rippled_ws",
        help=f"rippled WebSocket URL (env RIPPLED_WS, default {DEFAULT_RIPPLED_WS})",
    )
    parser.add_argument(
        "--db",
        dest="database_url",
        help="Database URL, e.g. duckdb:///data/dex.duckdb (env DATABASE_URL, required)",
    )
    parser.add_argument(
        "--start-ledger",
        dest="start_ledger",
        type=int,
        help="Never backfill before this ledger (env START_LEDGER)",
    )
    parser.add_argument(
        "-v", "--verbose",
        dest="verbose",
        action="store_true",
        default=None,
        help="Verbose logging (env VERBOSE)",
    )
    parser.add_argument(
        "--log-file",
        dest="log_file",
        help="Also write logs to this file (env LOG_FILE)",
    )
    parser.add_argument(
        "--json-logs",
        dest="json_logs",
        action="store_true",
        default=None,
        help="Emit JSON log lines (env JSON_LOGS)",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and build time, then exit",
    )
    return parser


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    keys = ("rippled_ws", "database_url", "start_ledger", "verbose", "log_file", "json_logs")
    return {key: getattr(args, key) for key in keys}


def _install_signal_handlers(indexer: Indexer) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, indexer.request_shutdown)
        except NotImplementedError:
            logger.debug(f"Signal handlers not supported, {sig.name} ignored")


async def run_indexer(indexer: Indexer) -> int:
    """Start, run and stop an indexer; returns the process exit code."""
    _install_signal_handlers(indexer)

    try:
        await indexer.start()
    except (IndexerError, ConnectionError) as e:
        logger.critical(f"❌ Startup failed: {e}")
        await indexer.stop()
        return EXIT_FATAL

    try:
        await indexer.run()
    finally:
        await indexer.stop()

    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Args:
        argv: Arguments (defaults to sys.argv[1:])

    Returns:
        Process exit code
    """
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(version_string())
        return EXIT_OK

    try:
        config = load_config(_cli_overrides(args))
    except ConfigError as e:
        setup_logging()
        logger.critical(f"❌ {e}")
        return EXIT_CONFIG

    setup_logging(config.log_level, config.log_file, config.json_logs, config.verbose)

    try:
        indexer = Indexer(config)
    except ConfigError as e:
        logger.critical(f"❌ {e}")
        return EXIT_CONFIG

    return asyncio.run(run_indexer(indexer))


def cli() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
