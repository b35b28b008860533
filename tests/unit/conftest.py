"""
Shared fixtures for indexer unit tests.
"""

import pytest

from dex_indexer.market_data.storage import IndexerStore


@pytest.fixture
def store():
    """In-memory store with schema created."""
    indexer_store = IndexerStore("duckdb://:memory:")
    indexer_store.connect()
    yield indexer_store
    indexer_store.close()


@pytest.fixture
def file_store(tmp_path):
    """Store backed by a DuckDB file in a temporary directory."""
    indexer_store = IndexerStore(f"duckdb://{tmp_path / 'dex.duckdb'}")
    indexer_store.connect()
    yield indexer_store
    indexer_store.close()
