"""
Logging Utilities

Provides structured logging with:
- JSON formatting for production
- Ledger/transaction context on records
- Verbose-mode gating passed in explicitly (no module globals)
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional
from pathlib import Path


CONTEXT_FIELDS = ('ledger_index', 'tx_hash', 'service', 'execution_time')

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        # Add extra fields if present
        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_entry[name] = getattr(record, name)

        # Add exception info if present
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class IndexerLogger:
    """
    Logger wrapper carrying the verbose flag.

    verbose() messages are emitted at INFO only when verbose mode was
    requested; otherwise they go to DEBUG.
    """

    def __init__(self, name: str, verbose: bool = False):
        self.logger = logging.getLogger(name)
        self.is_verbose = verbose

    def verbose(self, message: str, **context):
        """Log a detail message that only matters in verbose mode."""
        level = logging.INFO if self.is_verbose else logging.DEBUG
        self.logger.log(level, message, extra=context or None)

    def ledger_event(self, ledger_index: int, message: str, level: int = logging.INFO, **context):
        """Log a message tagged with a ledger index."""
        extra = {'ledger_index': ledger_index, **context}
        self.logger.log(level, message, extra=extra)

    def transaction_error(self, ledger_index: int, tx_hash: Optional[str], message: str):
        """Log a per-transaction failure with its ledger and hash."""
        extra = {'ledger_index': ledger_index, 'tx_hash': tx_hash}
        self.logger.warning(
            f"⚠️  Ledger {ledger_index} tx {tx_hash or '<no hash>'}: {message}",
            extra=extra
        )


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = False,
    verbose: bool = False
) -> logging.Logger:
    """
    Setup logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path (console only when None)
        json_format: Use JSON formatting
        verbose: Lower the root level to DEBUG

    Returns:
        Configured root logger
    """
    logger = logging.getLogger()
    level = logging.DEBUG if verbose else getattr(logging, log_level.upper(), logging.INFO)
    logger.setLevel(level)

    # Clear existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    # Choose formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler if specified
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Third-party chatter
    for noisy in ('aiohttp', 'asyncio'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger

