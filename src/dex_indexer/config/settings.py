"""
Configuration model using Pydantic for type-safe validation.

IndexerConfig covers:
- Upstream rippled WebSocket endpoint and timeouts
- Store location (DATABASE_URL)
- Gap detection / backfill tuning
- Logging (level, destination, format, verbose mode)
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum


# ============================================================================
# Defaults
# ============================================================================

DEFAULT_RIPPLED_WS = "ws://localhost:6006"

# First ledger closed on or after 2025-11-01 00:00 UTC
DEFAULT_START_LEDGER = 99_984_580


class LogLevel(str, Enum):
    """Logging level."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# ============================================================================
# Indexer Configuration
# ============================================================================

class IndexerConfig(BaseModel):
    """Complete indexer configuration."""

    model_config = ConfigDict(use_enum_values=True, extra="forbid")

    # Upstream
    rippled_ws: str = Field(
        default=DEFAULT_RIPPLED_WS,
        description="rippled WebSocket URL"
    )

    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds to wait for an RPC response"
    )

    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait for the WebSocket handshake"
    )

    reconnect_initial_delay: float = Field(
        default=1.0,
        gt=0,
        description="First reconnect delay of the live source (seconds)"
    )

    reconnect_max_delay: float = Field(
        default=60.0,
        gt=0,
        description="Reconnect delay cap of the live source (seconds)"
    )

    live_buffer_size: int = Field(
        default=100,
        ge=1,
        description="Capacity of the live ledger feed"
    )

    # Store
    database_url: str = Field(
        ...,
        description="DuckDB database URL (duckdb:///path or bare path)"
    )

    # Gap detection / backfill
    start_ledger: int = Field(
        default=DEFAULT_START_LEDGER,
        ge=1,
        description="Historical cutoff; ledgers before it are never backfilled"
    )

    small_gap_threshold: int = Field(
        default=1000,
        ge=0,
        description="Largest number of missing ledgers that is backfilled"
    )

    backfill_max_retries: int = Field(
        default=3,
        ge=1,
        description="Fetch attempts per ledger before backfill aborts"
    )

    backfill_retry_delay: float = Field(
        default=1.0,
        ge=0,
        description="Linear backoff base between fetch attempts (seconds)"
    )

    backfill_buffer_size: int = Field(
        default=10_000,
        ge=1,
        description="Capacity of the backfill ledger feed"
    )

    progress_interval: int = Field(
        default=100,
        ge=1,
        description="Backfill progress is logged every N ledgers"
    )

    # Logging
    verbose: bool = Field(
        default=False,
        description="Per-ledger / per-transaction detail"
    )

    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level"
    )

    log_file: Optional[str] = Field(
        default=None,
        description="Log file path (console only when unset)"
    )

    json_logs: bool = Field(
        default=False,
        description="Emit JSON log lines"
    )

    @field_validator("rippled_ws")
    @classmethod
    def validate_rippled_ws(cls, v):
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("rippled_ws must be a ws:// or wss:// URL")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v or not v.strip():
            raise ValueError("database_url is required")
        return v.strip()

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("log_file", mode="before")
    @classmethod
    def empty_log_file(cls, v):
        # Blank YAML/env values mean "no file"
        if isinstance(v, str) and not v.strip():
            return None
        return v
