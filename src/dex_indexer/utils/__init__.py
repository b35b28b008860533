"""Shared utilities."""

from .logger import IndexerLogger, JSONFormatter, setup_logging

__all__ = [
    "IndexerLogger",
    "JSONFormatter",
    "setup_logging",
]
