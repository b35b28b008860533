"""
Unit tests for the application layer.

Tests:
1. Primary loop: ledgers processed, stream errors logged, shutdown
2. Startup sync states and supervised backfill
3. Exit codes (version, config errors, fatal startup)
"""

import asyncio
import pytest

from dex_indexer import __version__
from dex_indexer import main as main_module
from dex_indexer.config import IndexerConfig
from dex_indexer.core.exceptions import FetchError, SourceConnectionError
from dex_indexer.indexer import SyncState
from dex_indexer.main import EXIT_CONFIG, EXIT_FATAL, EXIT_OK, Indexer, main, run_indexer
from dex_indexer.market_data.models import LedgerCheckpoint
from dex_indexer.market_data.stream.xrpl.models import ServerInfo

from builders import amm_create, make_ledger, offer_create


class FakeLiveSource:
    """Live source whose feeds are filled by the test."""

    def __init__(self, validated_ledger: int = 100, fail_connect: bool = False):
        self.validated_ledger = validated_ledger
        self.fail_connect = fail_connect
        self.ledgers = asyncio.Queue()
        self.errors = asyncio.Queue()
        self.subscribed = False
        self.closed = False

    async def connect(self):
        if self.fail_connect:
            raise SourceConnectionError("connection refused")

    async def get_server_info(self):
        return ServerInfo(validated_ledger=self.validated_ledger, server_state="full")

    async def subscribe(self):
        self.subscribed = True

    async def close(self):
        self.closed = True


class FakeBackfillSource:
    def __init__(self, fail=False):
        self.fail = fail
        self.fetched = []
        self.closed = False

    async def connect(self):
        pass

    async def close(self):
        self.closed = True

    async def fetch_ledger(self, ledger_index):
        self.fetched.append(ledger_index)
        if self.fail:
            raise FetchError(ledger_index, "timeout")
        return make_ledger(ledger_index)


def make_config(**overrides) -> IndexerConfig:
    values = {
        "database_url": "duckdb://:memory:",
        "start_ledger": 1,
        "backfill_retry_delay": 0,
    }
    values.update(overrides)
    return IndexerConfig(**values)


async def wait_until(predicate, timeout: float = 5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ============================================================================
# Primary loop
# ============================================================================

async def test_live_ledgers_are_processed_until_shutdown(store):
    source = FakeLiveSource(validated_ledger=100)
    indexer = Indexer(make_config(), store=store, source=source)

    await indexer.start()
    assert source.subscribed
    assert indexer.sync_state == SyncState.NO_CHECKPOINT

    run_task = asyncio.create_task(indexer.run())
    await source.ledgers.put(make_ledger(101, [amm_create()]))
    await source.errors.put(SourceConnectionError("session dropped"))
    await source.ledgers.put(make_ledger(102, [offer_create()]))

    await wait_until(lambda: indexer.live_ledgers == 2 and indexer.stream_errors == 1)

    assert store.get_last_checkpoint().ledger_index == 102
    assert len(store.list_amm_pools()) == 1

    indexer.request_shutdown()
    await asyncio.wait_for(run_task, timeout=5)
    await indexer.stop()

    assert source.closed


async def test_duplicate_live_ledger_is_skipped(store):
    source = FakeLiveSource()
    indexer = Indexer(make_config(), store=store, source=source)
    await indexer.start()

    run_task = asyncio.create_task(indexer.run())
    await source.ledgers.put(make_ledger(101))
    await source.ledgers.put(make_ledger(101))
    await wait_until(lambda: indexer.processor.stats.duplicates_skipped == 1)

    assert indexer.live_ledgers == 1

    indexer.request_shutdown()
    await asyncio.wait_for(run_task, timeout=5)
    await indexer.stop()


async def test_unexpected_ledger_failure_does_not_stop_loop(store, monkeypatch):
    source = FakeLiveSource()
    indexer = Indexer(make_config(), store=store, source=source)
    await indexer.start()

    process_ledger = indexer.processor.process_ledger

    def flaky_process(ledger):
        if ledger.ledger_index == 101:
            raise RuntimeError("corrupt ledger object")
        return process_ledger(ledger)

    monkeypatch.setattr(indexer.processor, "process_ledger", flaky_process)

    run_task = asyncio.create_task(indexer.run())
    await source.ledgers.put(make_ledger(101))
    await source.ledgers.put(make_ledger(102))
    await wait_until(lambda: indexer.live_ledgers == 1)

    assert not run_task.done()
    assert store.get_checkpoint(102) is not None

    indexer.request_shutdown()
    await asyncio.wait_for(run_task, timeout=5)
    await indexer.stop()


async def test_database_connection_is_audited(store):
    indexer = Indexer(make_config(), store=store, source=FakeLiveSource())

    await indexer.start()

    events = store.get_connection_events("database")
    assert [e.event for e in events] == ["attempt", "success"]
    await indexer.stop()


# ============================================================================
# Startup sync
# ============================================================================

async def test_small_gap_starts_supervised_backfill(store):
    store.save_checkpoint(LedgerCheckpoint(1000, "H1000", 0, 0, 0))
    backfill_source = FakeBackfillSource()
    indexer = Indexer(
        make_config(),
        store=store,
        source=FakeLiveSource(validated_ledger=1006),
        backfill_source=backfill_source,
    )

    await indexer.start()
    assert indexer.sync_state == SyncState.SMALL_GAP_BACKFILLING

    run_task = asyncio.create_task(indexer.run())
    result = await asyncio.wait_for(indexer.backfill.task, timeout=5)

    assert result.completed
    assert backfill_source.fetched == [1001, 1002, 1003, 1004, 1005]
    assert store.get_checkpoint(1005) is not None

    indexer.request_shutdown()
    await asyncio.wait_for(run_task, timeout=5)
    await indexer.stop()


async def test_backfill_failure_does_not_stop_live_loop(store):
    store.save_checkpoint(LedgerCheckpoint(1000, "H1000", 0, 0, 0))
    source = FakeLiveSource(validated_ledger=1003)
    indexer = Indexer(
        make_config(backfill_max_retries=2),
        store=store,
        source=source,
        backfill_source=FakeBackfillSource(fail=True),
    )
    await indexer.start()

    run_task = asyncio.create_task(indexer.run())
    result = await asyncio.wait_for(indexer.backfill.task, timeout=5)
    assert result.completed is False
    assert result.failed_ledger == 1001

    await source.ledgers.put(make_ledger(1003))
    await wait_until(lambda: indexer.live_ledgers == 1)

    indexer.request_shutdown()
    await asyncio.wait_for(run_task, timeout=5)
    await indexer.stop()


async def test_large_gap_skips_backfill(store):
    store.save_checkpoint(LedgerCheckpoint(1000, "H1000", 0, 0, 0))
    indexer = Indexer(make_config(), store=store, source=FakeLiveSource(validated_ledger=5000))

    await indexer.start()

    assert indexer.sync_state == SyncState.LARGE_GAP_SKIPPED
    assert indexer.backfill is None
    await indexer.stop()


async def test_shutdown_abandons_running_backfill(store):
    class StalledSource(FakeBackfillSource):
        async def fetch_ledger(self, ledger_index):
            await asyncio.sleep(3600)

    store.save_checkpoint(LedgerCheckpoint(1000, "H1000", 0, 0, 0))
    indexer = Indexer(
        make_config(),
        store=store,
        source=FakeLiveSource(validated_ledger=1010),
        backfill_source=StalledSource(),
    )
    await indexer.start()
    await asyncio.sleep(0.01)

    await indexer.stop()

    assert indexer.backfill.task.cancelled()


# ============================================================================
# Exit codes
# ============================================================================

async def test_fatal_startup_failure_exits_1(store):
    source = FakeLiveSource(fail_connect=True)
    indexer = Indexer(make_config(), store=store, source=source)

    assert await run_indexer(indexer) == EXIT_FATAL
    assert source.closed


def test_version_flag(capsys, monkeypatch):
    monkeypatch.setenv("BUILD_TIME", "2025-11-01T00:00:00Z")

    assert main(["--version"]) == EXIT_OK

    out = capsys.readouterr().out
    assert __version__ in out
    assert "2025-11-01T00:00:00Z" in out


@pytest.fixture
def quiet_main(monkeypatch, tmp_path):
    """Keep main() from reconfiguring test logging or reading real config."""
    monkeypatch.setattr(main_module, "setup_logging", lambda *args, **kwargs: None)
    monkeypatch.setenv("DATABASE_URL", "")
    monkeypatch.delenv("DATABASE_URL")
    original = main_module.load_config

    def isolated_load_config(cli_overrides=None):
        return original(cli_overrides, config_dir=tmp_path, env_file=tmp_path / ".env")

    monkeypatch.setattr(main_module, "load_config", isolated_load_config)


def test_missing_database_url_exits_2(quiet_main):
    assert main([]) == EXIT_CONFIG


def test_unsupported_database_scheme_exits_2(quiet_main):
    assert main(["--db", "postgres://user@localhost/dex"]) == EXIT_CONFIG
