"""
Configuration loader with YAML + environment variable support.

Precedence (lowest to highest):
1. Field defaults in IndexerConfig
2. config/indexer.yaml (supports ${VAR} and ${VAR:default} placeholders)
3. Environment variables (a .env file is loaded first, without
   overriding variables already set)
4. CLI overrides
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from dotenv import load_dotenv
from pydantic import ValidationError
import logging

from ..core.exceptions import ConfigError
from .settings import IndexerConfig


# Configure logging
logger = logging.getLogger(__name__)

# Get the project root directory
PROJECT_ROOT = Path(__file__).resolve().parents[3]

CONFIG_NAME = "indexer"

# Environment variable -> IndexerConfig field
ENV_OVERRIDES = {
    "RIPPLED_WS": "rippled_ws",
    "DATABASE_URL": "database_url",
    "VERBOSE": "verbose",
    "START_LEDGER": "start_ledger",
    "SMALL_GAP_THRESHOLD": "small_gap_threshold",
    "BACKFILL_MAX_RETRIES": "backfill_max_retries",
    "BACKFILL_RETRY_DELAY": "backfill_retry_delay",
    "BACKFILL_BUFFER_SIZE": "backfill_buffer_size",
    "LIVE_BUFFER_SIZE": "live_buffer_size",
    "REQUEST_TIMEOUT": "request_timeout",
    "CONNECT_TIMEOUT": "connect_timeout",
    "PROGRESS_INTERVAL": "progress_interval",
    "LOG_LEVEL": "log_level",
    "LOG_FILE": "log_file",
    "JSON_LOGS": "json_logs",
}


# ============================================================================
# ConfigLoader - Main Configuration Loader
# ============================================================================

class ConfigLoader:
    """
    Configuration loader with YAML + environment variable support.

    Features:
    - Loads configuration from YAML files
    - Overrides with environment variables
    - Validates using Pydantic models
    """

    def __init__(self, config_dir: Optional[Path] = None, env_file: Optional[Path] = None):
        """
        Initialize configuration loader.

        Args:
            config_dir: Configuration directory (defaults to PROJECT_ROOT/config)
            env_file: .env file (defaults to PROJECT_ROOT/.env)
        """
        self.config_dir = Path(config_dir) if config_dir else (PROJECT_ROOT / "config")
        self.env_file = Path(env_file) if env_file else (PROJECT_ROOT / ".env")
        logger.debug(f"ConfigLoader initialized with config_dir: {self.config_dir}")

    def load_yaml(self, config_name: str) -> Dict[str, Any]:
        """
        Load a YAML configuration file.

        Args:
            config_name: Name of the config file (without .yaml extension)

        Returns:
            Dictionary containing configuration data

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigError: If the file is not valid YAML or not a mapping
        """
        config_path = self.config_dir / f"{config_name}.yaml"

        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        logger.debug(f"Loading YAML config from: {config_path}")

        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(config, dict):
            raise ConfigError(f"{config_path} must contain a mapping")

        # Replace environment variable placeholders
        return self._replace_env_vars(config)

    def _replace_env_vars(self, config: Any) -> Any:
        """
        Recursively replace environment variable placeholders in config.

        Placeholders format: ${ENV_VAR_NAME} or ${ENV_VAR_NAME:default_value}

        Args:
            config: Configuration dictionary or value

        Returns:
            Configuration with environment variables replaced
        """
        if isinstance(config, dict):
            return {k: self._replace_env_vars(v) for k, v in config.items()}
        elif isinstance(config, list):
            return [self._replace_env_vars(item) for item in config]
        elif isinstance(config, str):
            # Check for ${VAR} or ${VAR:default} pattern
            if config.startswith("${") and config.endswith("}"):
                env_expr = config[2:-1]  # Remove ${ and }

                # Check for default value
                if ":" in env_expr:
                    var_name, default_value = env_expr.split(":", 1)
                    return os.getenv(var_name.strip(), default_value.strip())
                else:
                    var_name = env_expr.strip()
                    value = os.getenv(var_name)
                    if value is None:
                        logger.warning(f"Environment variable {var_name} not set, using empty string")
                        return ""
                    return value

        return config

    def load_indexer_config(self, cli_overrides: Optional[Dict[str, Any]] = None) -> IndexerConfig:
        """
        Load and validate the indexer configuration.

        Args:
            cli_overrides: Values from the command line; None entries are
                treated as "not given"

        Returns:
            Validated IndexerConfig instance

        Raises:
            ConfigError: If the configuration is missing required values or
                fails validation
        """
        if self.env_file.exists():
            load_dotenv(self.env_file, override=False)

        config_data: Dict[str, Any] = {}

        try:
            yaml_config = self.load_yaml(CONFIG_NAME)
            config_data.update(yaml_config.get("indexer", yaml_config))
        except FileNotFoundError:
            logger.debug(f"{CONFIG_NAME}.yaml not found, using defaults")

        # Blank values from unresolved placeholders fall back to defaults
        config_data = {k: v for k, v in config_data.items() if v != ""}

        # Override with environment variables
        config_data = self._apply_env_overrides(config_data)

        # Override with CLI flags
        for key, value in (cli_overrides or {}).items():
            if value is not None:
                config_data[key] = value

        if not config_data.get("database_url"):
            raise ConfigError("DATABASE_URL is required (set DATABASE_URL or pass --db)")

        # Validate with Pydantic
        try:
            config = IndexerConfig(**config_data)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ConfigError(f"Invalid configuration: {e}") from e

        logger.debug("Indexer configuration loaded and validated successfully")
        return config

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply environment variable overrides to configuration.

        Example: START_LEDGER=100000000

        Args:
            config: Configuration dictionary

        Returns:
            Configuration with environment overrides applied
        """
        for env_name, field_name in ENV_OVERRIDES.items():
            env_val = os.getenv(env_name)
            if env_val is not None and env_val != "":
                config[field_name] = env_val

        return config


def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    config_dir: Optional[Path] = None,
    env_file: Optional[Path] = None
) -> IndexerConfig:
    """
    Load the indexer configuration.

    Args:
        cli_overrides: Values from the command line
        config_dir: Directory holding indexer.yaml
        env_file: .env file to load

    Returns:
        Validated IndexerConfig

    Example:
        >>> config = load_config({"database_url": "duckdb:///data/dex.duckdb"})
        >>> config.start_ledger
        99984580
    """
    loader = ConfigLoader(config_dir=config_dir, env_file=env_file)
    return loader.load_indexer_config(cli_overrides)
