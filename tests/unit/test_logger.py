"""
Unit tests for logging utilities.

Tests:
1. JSONFormatter output and context fields
2. IndexerLogger verbose gating and transaction errors
3. setup_logging handlers
"""

import json
import logging
import pytest

from dex_indexer.utils import IndexerLogger, JSONFormatter, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(**extra):
    record = logging.LogRecord("dex_indexer.test", logging.WARNING, __file__, 10, "ledger %s", (7,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_context():
    output = json.loads(JSONFormatter().format(make_record(ledger_index=7, tx_hash="AB" * 32)))

    assert output["message"] == "ledger 7"
    assert output["level"] == "WARNING"
    assert output["ledger_index"] == 7
    assert output["tx_hash"] == "AB" * 32
    assert output["timestamp"].endswith("+00:00")
    assert "service" not in output


def test_verbose_is_debug_unless_enabled(caplog):
    quiet = IndexerLogger("dex_indexer.quiet")
    loud = IndexerLogger("dex_indexer.loud", verbose=True)

    with caplog.at_level(logging.INFO):
        quiet.verbose("hidden detail")
        loud.verbose("shown detail", ledger_index=5)

    assert "hidden detail" not in caplog.text
    assert "shown detail" in caplog.text
    assert caplog.records[-1].ledger_index == 5


def test_transaction_error_carries_ledger_and_hash(caplog):
    log = IndexerLogger("dex_indexer.tx")

    with caplog.at_level(logging.WARNING):
        log.transaction_error(42, None, "bad amount")

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert record.ledger_index == 42
    assert "Ledger 42 tx <no hash>: bad amount" in record.getMessage()


def test_setup_logging_writes_json_file(restore_root_logger, tmp_path):
    log_file = tmp_path / "logs" / "indexer.log"

    root = setup_logging("warning", str(log_file), json_format=True)
    logging.getLogger("dex_indexer.file").warning("disk nearly full", extra={"service": "database"})
    for handler in root.handlers:
        handler.flush()

    assert root.level == logging.WARNING
    assert len(root.handlers) == 2
    line = json.loads(log_file.read_text().strip().splitlines()[-1])
    assert line["message"] == "disk nearly full"
    assert line["service"] == "database"


def test_setup_logging_verbose_lowers_level(restore_root_logger):
    root = setup_logging("INFO", verbose=True)

    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
