"""
Exception taxonomy for the ledger indexer.

Every error raised across a component seam derives from IndexerError so the
application layer can tell indexer failures apart from programming errors.
"""

from typing import Optional


# ============================================================================
# Exception Classes
# ============================================================================

class IndexerError(Exception):
    """Base exception for indexer errors."""
    pass


class ConfigError(IndexerError):
    """Exception raised for invalid or missing configuration."""
    pass


class SourceConnectionError(IndexerError, ConnectionError):
    """Exception raised for transport-level failures talking to rippled."""
    pass


class RPCError(IndexerError):
    """Exception raised for malformed, missing or failed rippled responses."""
    pass


class FetchError(IndexerError):
    """Exception raised when a historical ledger cannot be fetched."""

    def __init__(self, ledger_index: int, message: str):
        self.ledger_index = ledger_index
        super().__init__(f"ledger {ledger_index}: {message}")


class ParseError(IndexerError):
    """Exception raised when a single transaction cannot be decoded."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(message)


class PersistenceError(IndexerError):
    """Exception raised when a store read or write fails."""
    pass
