"""
Unit tests for configuration loading.

Tests:
1. Defaults
2. YAML placeholders
3. Precedence: YAML < environment < CLI
4. Validation errors -> ConfigError
"""

import pytest

from dex_indexer.config import DEFAULT_START_LEDGER, IndexerConfig, load_config
from dex_indexer.config.loader import ENV_OVERRIDES
from dex_indexer.core.exceptions import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Isolate tests from the developer's environment."""
    for name in ENV_OVERRIDES:
        # setenv first so teardown also removes .env values
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


@pytest.fixture
def config_dir(tmp_path):
    directory = tmp_path / "config"
    directory.mkdir()
    return directory


def load(config_dir, tmp_path, cli=None):
    return load_config(cli, config_dir=config_dir, env_file=tmp_path / "missing.env")


def write_yaml(config_dir, body: str):
    (config_dir / "indexer.yaml").write_text(body)


def test_defaults(config_dir, tmp_path):
    config = load(config_dir, tmp_path, {"database_url": "duckdb://:memory:"})

    assert config.rippled_ws == "ws://localhost:6006"
    assert config.start_ledger == DEFAULT_START_LEDGER == 99984580
    assert config.small_gap_threshold == 1000
    assert config.backfill_max_retries == 3
    assert config.backfill_buffer_size == 10000
    assert config.progress_interval == 100
    assert config.verbose is False
    assert config.log_level == "INFO"
    assert config.log_file is None


def test_missing_database_url_is_config_error(config_dir, tmp_path):
    with pytest.raises(ConfigError):
        load(config_dir, tmp_path)


def test_yaml_values_and_placeholders(config_dir, tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_DATABASE_URL", "duckdb:///data/dex.duckdb")
    write_yaml(config_dir, """
indexer:
  database_url: ${TEST_DATABASE_URL}
  start_ledger: 100000000
  rippled_ws: ${UNSET_RIPPLED:wss://xrplcluster.com}
  log_file: ${UNSET_LOG_FILE:}
""")

    config = load(config_dir, tmp_path)

    assert config.database_url == "duckdb:///data/dex.duckdb"
    assert config.start_ledger == 100000000
    assert config.rippled_ws == "wss://xrplcluster.com"
    assert config.log_file is None


def test_environment_overrides_yaml(config_dir, tmp_path, monkeypatch):
    write_yaml(config_dir, """
indexer:
  database_url: duckdb:///yaml.duckdb
  start_ledger: 100000000
  verbose: false
""")
    monkeypatch.setenv("DATABASE_URL", "duckdb:///env.duckdb")
    monkeypatch.setenv("START_LEDGER", "100000500")
    monkeypatch.setenv("VERBOSE", "true")

    config = load(config_dir, tmp_path)

    assert config.database_url == "duckdb:///env.duckdb"
    assert config.start_ledger == 100000500
    assert config.verbose is True


def test_cli_overrides_environment(config_dir, tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "duckdb:///env.duckdb")
    monkeypatch.setenv("RIPPLED_WS", "ws://env:6006")

    config = load(config_dir, tmp_path, {
        "database_url": "duckdb:///cli.duckdb",
        "rippled_ws": None,
        "start_ledger": 123,
        "verbose": None,
    })

    assert config.database_url == "duckdb:///cli.duckdb"
    assert config.rippled_ws == "ws://env:6006"
    assert config.start_ledger == 123


def test_dotenv_file_is_loaded(config_dir, tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("DATABASE_URL=duckdb:///dotenv.duckdb\nSTART_LEDGER=42\n")

    config = load_config(config_dir=config_dir, env_file=env_file)

    assert config.database_url == "duckdb:///dotenv.duckdb"
    assert config.start_ledger == 42


@pytest.mark.parametrize("override", [
    {"rippled_ws": "http://localhost:5005"},
    {"start_ledger": 0},
    {"backfill_max_retries": 0},
    {"log_level": "LOUD"},
])
def test_invalid_values_are_config_errors(config_dir, tmp_path, override):
    with pytest.raises(ConfigError):
        load(config_dir, tmp_path, {"database_url": "duckdb://:memory:", **override})


def test_invalid_yaml_is_config_error(config_dir, tmp_path):
    write_yaml(config_dir, "indexer: [unclosed")

    with pytest.raises(ConfigError):
        load(config_dir, tmp_path, {"database_url": "duckdb://:memory:"})


def test_unknown_yaml_key_is_config_error(config_dir, tmp_path):
    write_yaml(config_dir, "indexer:\n  database_url: x.duckdb\n  colour: blue\n")

    with pytest.raises(ConfigError):
        load(config_dir, tmp_path)


def test_log_level_is_case_insensitive():
    config = IndexerConfig(database_url="x.duckdb", log_level="debug")

    assert config.log_level == "DEBUG"
