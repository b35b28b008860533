"""Core indexer building blocks."""

from .exceptions import (
    IndexerError,
    ConfigError,
    SourceConnectionError,
    RPCError,
    FetchError,
    ParseError,
    PersistenceError,
)

__all__ = [
    "IndexerError",
    "ConfigError",
    "SourceConnectionError",
    "RPCError",
    "FetchError",
    "ParseError",
    "PersistenceError",
]
