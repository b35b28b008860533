"""
Configuration management for the ledger indexer.

Pydantic-validated settings loaded from YAML, environment and CLI.
"""

from .settings import IndexerConfig, LogLevel, DEFAULT_RIPPLED_WS, DEFAULT_START_LEDGER
from .loader import ConfigLoader, load_config

__all__ = [
    "IndexerConfig",
    "LogLevel",
    "DEFAULT_RIPPLED_WS",
    "DEFAULT_START_LEDGER",
    "ConfigLoader",
    "load_config",
]
