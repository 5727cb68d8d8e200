"""
Unit tests for configuration loading and source construction.
"""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from statesync.config import (
    ConfigError,
    apply_env_overrides,
    build_sources,
    load_config,
    parse_config,
    resolve_secrets,
)
from statesync.sources.file import FileSource
from statesync.sources.provider import ProviderSink
from statesync.sources.store import StoreSink, StoreSource

EXAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "config" / "statesync.example.yaml"


@pytest.fixture
def minimal():
    return {
        "entities": {
            "item": {"identity_field": "id", "fields": {"name": "string", "price": {"type": "decimal", "tolerance": 0.01}}},
        },
        "origins": {
            "fixtures": {"type": "file", "path": "items.yaml"},
            "db": {"type": "store", "tables": {"item": {"table": "public.Item", "identity_column": "id"}}},
        },
    }


class TestParseConfig:
    """Test YAML mapping parsing."""

    def test_example_config_loads(self):
        config = load_config(str(EXAMPLE_CONFIG), env={})

        assert config.kind_order == ["session_type", "webhook_subscription"]
        assert config.entities["session_type"].tolerance_for("price") == 0.005
        assert config.entities["session_type"].fields["description"].type == "string"
        assert config.origins["fixtures"].read_only is True
        assert config.origins["marketplace-db"].read_only is False
        assert config.retry.max_attempts == 3

    def test_defaults(self, minimal):
        config = parse_config(minimal)

        assert config.kind_order == ["item"]
        assert config.blast_radius_threshold == 0.5
        assert config.journal_dir == ".reconciliation"
        assert config.entities["item"].fields["name"].type == "string"

    def test_kind_order_completed_with_remaining_kinds(self, minimal):
        minimal["entities"]["tag"] = {"identity_field": "name"}
        minimal["kind_order"] = ["tag"]

        assert parse_config(minimal).kind_order == ["tag", "item"]

    def test_kind_order_unknown_kind(self, minimal):
        minimal["kind_order"] = ["item", "ghost"]

        with pytest.raises(ConfigError, match="unknown kinds"):
            parse_config(minimal)

    def test_entity_requires_identity_field(self, minimal):
        minimal["entities"]["item"] = {"fields": {}}

        with pytest.raises(ConfigError, match="identity_field"):
            parse_config(minimal)

    def test_unknown_field_type(self, minimal):
        minimal["entities"]["item"]["fields"]["name"] = "text"

        with pytest.raises(ConfigError, match="unknown type 'text'"):
            parse_config(minimal)

    def test_invalid_origin_type(self, minimal):
        minimal["origins"]["db"]["type"] = "mysql"

        with pytest.raises(ConfigError, match="invalid type"):
            parse_config(minimal)

    def test_store_origin_needs_tables(self, minimal):
        del minimal["origins"]["db"]["tables"]

        with pytest.raises(ConfigError, match="needs tables"):
            parse_config(minimal)

    def test_no_entities(self):
        with pytest.raises(ConfigError, match="entity kind"):
            parse_config({"origins": {"f": {"type": "file", "path": "x"}}})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            load_config(str(tmp_path / "missing.yaml"))


class TestEnvironment:
    """Test environment overrides and secret resolution."""

    def test_env_overrides(self, minimal):
        config = parse_config(minimal)

        apply_env_overrides(config, {
            "STATESYNC_JOURNAL_DIR": "/var/lib/statesync",
            "STATESYNC_BLAST_RADIUS_THRESHOLD": "0.25",
            "STATESYNC_PARALLEL_CREATES": "4",
            "DATABASE_URL": "postgresql://localhost/app",
        })

        assert config.journal_dir == "/var/lib/statesync"
        assert config.blast_radius_threshold == 0.25
        assert config.parallel_creates == 4
        assert config.origins["db"].options["dsn"] == "postgresql://localhost/app"

    def test_invalid_env_value(self, minimal):
        config = parse_config(minimal)

        with pytest.raises(ConfigError, match="STATESYNC_CALL_TIMEOUT"):
            apply_env_overrides(config, {"STATESYNC_CALL_TIMEOUT": "soon"})

    def test_provider_token_from_env(self):
        config = load_config(str(EXAMPLE_CONFIG), env={"CALENDLY_API_TOKEN": "tok"})

        assert config.origins["calendly"].options["token"] == "tok"

    def test_resolve_secrets_from_vault(self):
        config = load_config(str(EXAMPLE_CONFIG), env={})
        vault = MagicMock()
        vault.get_database_dsn.return_value = "host=db dbname=app"

        resolve_secrets(config, vault)

        vault.get_database_dsn.assert_called_once_with("statesync/marketplace-db")
        assert config.origins["marketplace-db"].options["dsn"] == "host=db dbname=app"

    def test_explicit_dsn_wins_over_vault(self):
        config = load_config(str(EXAMPLE_CONFIG), env={"DATABASE_URL": "postgresql://local/app"})
        vault = MagicMock()

        resolve_secrets(config, vault)

        vault.get_database_dsn.assert_not_called()

    def test_without_vault_leaves_options(self):
        config = load_config(str(EXAMPLE_CONFIG), env={})

        resolve_secrets(config, None)

        assert "dsn" not in config.origins["marketplace-db"].options


class TestBuildSources:
    """Test origin construction."""

    def test_builds_each_origin_type(self):
        config = load_config(str(EXAMPLE_CONFIG), env={"DATABASE_URL": "postgresql://local/app", "CALENDLY_API_TOKEN": "tok"})
        connect = MagicMock()
        session_factory = MagicMock()

        sources, resources = build_sources(config, connect=connect, session_factory=session_factory)

        assert isinstance(sources["fixtures"], FileSource)
        assert isinstance(sources["marketplace-db"], StoreSink)
        assert isinstance(sources["calendly"], ProviderSink)
        assert sources["marketplace-db"].timeout_seconds == 30.0
        connect.assert_called_once_with("postgresql://local/app")
        assert resources == [connect.return_value, session_factory.return_value]

    def test_read_only_store_builds_source(self, minimal):
        minimal["origins"]["db"]["read_only"] = True
        minimal["origins"]["db"]["dsn"] = "postgresql://local/app"

        sources, _ = build_sources(parse_config(minimal), connect=MagicMock())

        assert type(sources["db"]) is StoreSource

    def test_missing_credentials_closes_opened_resources(self):
        config = load_config(str(EXAMPLE_CONFIG), env={"DATABASE_URL": "postgresql://local/app"})
        connect = MagicMock()

        with pytest.raises(ConfigError, match="no token"):
            build_sources(config, connect=connect, session_factory=MagicMock())

        connect.return_value.close.assert_called_once()
