"""
Gap detection and backfill.

At startup the last checkpoint is compared with the node's validated
ledger. Small gaps are replayed by a supervised BackfillWorker running
beside the live loop; large gaps are skipped (live ingestion only) and
never reach back past the configured start ledger.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..core.exceptions import FetchError, IndexerError, PersistenceError
from ..market_data.storage import IndexerStore
from ..market_data.stream.xrpl import AMMParser, LedgerSource, OrderbookParser
from ..market_data.stream.xrpl.client import BACKFILL_BUFFER_SIZE
from ..market_data.stream.xrpl.models import LedgerResponse
from ..utils.logger import IndexerLogger
from .pipeline import LedgerProcessor

logger = logging.getLogger(__name__)


SMALL_GAP_THRESHOLD = 1000
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_PROGRESS_INTERVAL = 100


class SyncState(str, Enum):
    """Startup synchronization outcome."""
    NO_CHECKPOINT = "no_checkpoint"                  # Fresh store, live only
    CAUGHT_UP = "caught_up"                          # Nothing to replay
    SMALL_GAP_BACKFILLING = "small_gap_backfilling"  # Replaying [start, end)
    LARGE_GAP_SKIPPED = "large_gap_skipped"          # Too far behind, live only


@dataclass
class BackfillPlan:
    """Decision taken at startup about missed ledgers."""
    state: SyncState
    current_ledger: int
    checkpoint_index: Optional[int] = None
    gap: int = 0
    missing: int = 0
    start: Optional[int] = None
    end: Optional[int] = None     # exclusive

    @property
    def should_backfill(self) -> bool:
        return self.state == SyncState.SMALL_GAP_BACKFILLING

    @property
    def ledger_count(self) -> int:
        if not self.should_backfill:
            return 0
        return self.end - self.start


def plan_backfill(
    checkpoint_index: Optional[int],
    current_ledger: int,
    start_ledger: int,
    small_gap_threshold: int = SMALL_GAP_THRESHOLD
) -> BackfillPlan:
    """
    Decide whether missed ledgers should be replayed.

    Args:
        checkpoint_index: Most recent checkpointed ledger (None if none)
        current_ledger: Node's current validated ledger
        start_ledger: Historical cutoff; nothing before it is replayed
        small_gap_threshold: Largest number of missing ledgers replayed

    Returns:
        BackfillPlan; when backfilling, the range is [start, end) with
        end = current_ledger (the live stream delivers the rest)
    """
    if checkpoint_index is None:
        return BackfillPlan(state=SyncState.NO_CHECKPOINT, current_ledger=current_ledger)

    gap = current_ledger - checkpoint_index
    if gap <= 1:
        return BackfillPlan(
            state=SyncState.CAUGHT_UP,
            current_ledger=current_ledger,
            checkpoint_index=checkpoint_index,
            gap=gap,
        )

    missing = gap - 1
    start = max(checkpoint_index + 1, start_ledger)
    plan = BackfillPlan(
        state=SyncState.SMALL_GAP_BACKFILLING,
        current_ledger=current_ledger,
        checkpoint_index=checkpoint_index,
        gap=gap,
        missing=missing,
        start=start,
        end=current_ledger,
    )

    if missing > small_gap_threshold:
        plan.state = SyncState.LARGE_GAP_SKIPPED
    elif start >= current_ledger:
        plan.state = SyncState.CAUGHT_UP

    return plan


@dataclass
class BackfillResult:
    """Outcome of one backfill run."""
    start: int
    end: int
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    completed: bool = False
    failed_ledger: Optional[int] = None
    error: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def attempted(self) -> int:
        return self.processed + self.skipped + self.errors


class BackfillWorker:
    """
    Supervised replay of a ledger range.

    Owns its own LedgerSource (large buffer, no auto-reconnect), its own
    parsers and its own LedgerProcessor; only the store is shared with the
    live path. Ledgers are walked in ascending order and already
    checkpointed ledgers are skipped without a fetch.

    Example:
        worker = BackfillWorker(url, store, plan.start, plan.end)
        task = worker.start()
        ...
        result = await task
    """

    def __init__(
        self,
        url: str,
        store: IndexerStore,
        start: int,
        end: int,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        buffer_size: int = BACKFILL_BUFFER_SIZE,
        progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
        request_timeout: float = 30.0,
        connect_timeout: float = 10.0,
        audit: Optional[Callable[..., None]] = None,
        verbose: bool = False,
        source: Optional[LedgerSource] = None
    ):
        """
        Initialize worker.

        Args:
            url: rippled WebSocket URL
            store: Shared indexer store
            start: First ledger to replay (inclusive)
            end: Ledger to stop at (exclusive)
            max_retries: Fetch attempts per ledger before aborting
            retry_delay: Base delay; attempt n waits n * retry_delay
            buffer_size: Ledger feed capacity of the backfill source
            progress_interval: Log progress every N ledgers
            request_timeout: RPC timeout of the backfill source
            connect_timeout: Handshake timeout of the backfill source
            audit: Connection audit callback for the backfill source
            verbose: Verbose logging
            source: Pre-built source (a new one is created if None)
        """
        self.url = url
        self.store = store
        self.start_ledger = start
        self.end_ledger = end
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.progress_interval = max(1, progress_interval)

        self.source = source or LedgerSource.with_buffer(
            url,
            buffer_size,
            request_timeout=request_timeout,
            connect_timeout=connect_timeout,
            audit=audit,
            name="backfill",
        )
        self.processor = LedgerProcessor(
            store,
            AMMParser(),
            OrderbookParser(),
            name="backfill",
            verbose=verbose
        )
        self.log = IndexerLogger(__name__, verbose)

        self.current_ledger: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._sleep = asyncio.sleep

    # ========================================================================
    # Supervision
    # ========================================================================

    def start(self) -> asyncio.Task:
        """Schedule run() as a background task and return it."""
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="backfill")
        return self._task

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def abandon(self) -> None:
        """Cancel a still-running backfill (shutdown path)."""
        if not self.running:
            return
        logger.warning(
            f"⚠️  Abandoning backfill at ledger {self.current_ledger} "
            f"(range {self.start_ledger}-{self.end_ledger - 1})"
        )
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    # ========================================================================
    # Replay
    # ========================================================================

    async def run(self) -> BackfillResult:
        """
        Replay [start, end).

        Returns:
            BackfillResult; completed is False when the run was aborted
            (connection failure, fetch retries exhausted). A ledger whose
            checkpoint cannot be written is counted in errors and the walk
            continues. Errors never propagate out of the worker.
        """
        result = BackfillResult(start=self.start_ledger, end=self.end_ledger)
        total = self.end_ledger - self.start_ledger
        started = time.monotonic()

        logger.info(
            f"🔄 Backfill starting: ledgers {self.start_ledger}-{self.end_ledger - 1} "
            f"({total} ledgers)"
        )

        try:
            await self.source.connect()

            for index in range(self.start_ledger, self.end_ledger):
                self.current_ledger = index

                if self._already_processed(index):
                    self.log.verbose(f"[backfill] Ledger {index} already checkpointed",
                                     ledger_index=index)
                    result.skipped += 1
                else:
                    ledger = await self._fetch_with_retry(index)
                    try:
                        if self.processor.process_ledger(ledger):
                            result.processed += 1
                        else:
                            result.skipped += 1
                    except PersistenceError as e:
                        result.errors += 1
                        logger.error(f"❌ Backfill ledger {index} not checkpointed: {e}")

                if result.attempted % self.progress_interval == 0:
                    self._log_progress(result.attempted, total, started)

            result.completed = True

        except FetchError as e:
            result.failed_ledger = e.ledger_index
            result.error = str(e)
            logger.error(f"❌ Backfill aborted: {e}")
        except IndexerError as e:
            result.failed_ledger = self.current_ledger
            result.error = str(e)
            logger.error(f"❌ Backfill aborted: {e}")
        finally:
            result.elapsed_seconds = time.monotonic() - started
            await self.source.close()

        if result.completed:
            logger.info(
                f"✓ Backfill complete: {result.processed} processed, "
                f"{result.skipped} already present, {result.errors} errors ({result.elapsed_seconds:.1f}s)"
            )
        return result

    def _already_processed(self, ledger_index: int) -> bool:
        try:
            return self.store.get_checkpoint(ledger_index) is not None
        except PersistenceError as e:
            logger.warning(f"⚠️  Checkpoint read failed for ledger {ledger_index}: {e}")
            return False

    async def _fetch_with_retry(self, ledger_index: int) -> LedgerResponse:
        """
        Fetch a ledger, retrying with linear backoff.

        Raises:
            FetchError: After max_retries failed attempts
        """
        last_error: Optional[FetchError] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await self.source.fetch_ledger(ledger_index)
            except FetchError as e:
                last_error = e
                if attempt < self.max_retries:
                    delay = self.retry_delay * attempt
                    logger.warning(
                        f"⚠️  Fetch of ledger {ledger_index} failed "
                        f"(attempt {attempt}/{self.max_retries}), retrying in {delay}s: {e}"
                    )
                    await self._sleep(delay)

        raise FetchError(
            ledger_index,
            f"giving up after {self.max_retries} attempts: {last_error}"
        )

    def _log_progress(self, done: int, total: int, started: float) -> None:
        elapsed = time.monotonic() - started
        percent = (done / total * 100) if total else 100.0
        rate = done / elapsed if elapsed > 0 else 0.0
        eta = (total - done) / rate if rate > 0 else 0.0
        logger.info(
            f"🔄 Backfill progress: {done}/{total} ({percent:.1f}%) "
            f"elapsed {elapsed:.0f}s, ETA {eta:.0f}s"
        )
