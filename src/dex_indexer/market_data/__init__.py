"""Market data ingestion: ledger streams, market state records and storage."""
