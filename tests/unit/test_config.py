"""
Unit tests for server configuration.

Tests cover:
- Defaults
- Environment variables
- YAML config file and precedence
- Validation failures
"""

import pytest

from service.entity_server.config import (
    CONFIG_FILE_ENV,
    ServerConfig,
    StorageBackend,
    flatten_settings,
    load_config_file,
)
from service.entity_server.docstore import SqliteDocumentStore, create_document_store

ENV_VARS = (
    CONFIG_FILE_ENV,
    "STORAGE_BACKEND",
    "STORAGE_HOST",
    "STORAGE_PORT",
    "STORAGE_DATABASE_NAME",
    "STORAGE_DATA_DIR",
    "STORAGE_CURSOR_BATCH_SIZE",
    "SQLITE_BUSY_TIMEOUT_MS",
    "SERVICE_HOST",
    "SERVICE_PORT",
    "SERVICE_MAX_MESSAGE_SIZE",
    "SERVICE_GRACE_SECONDS",
    "TYPE_REGISTRY_CACHE_TTL_SECONDS",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STORAGE_DATA_DIR", str(tmp_path))


def write_config(tmp_path, text):
    path = tmp_path / "entity-service.yaml"
    path.write_text(text)
    return str(path)


class TestServerConfig:
    """Tests for ServerConfig.from_env."""

    def test_defaults(self):
        config = ServerConfig.from_env()

        assert config.storage.backend == StorageBackend.SQLITE
        assert config.storage.host == "localhost"
        assert config.storage.port == 27017
        assert config.storage.database_name == "entity_service"
        assert config.service.port == 50061
        assert config.service.bind_address == "0.0.0.0:50061"
        assert config.cache.type_registry_ttl_seconds == 30
        assert config.observability.log_format == "json"

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "MEMORY")
        monkeypatch.setenv("SERVICE_PORT", "6000")
        monkeypatch.setenv("TYPE_REGISTRY_CACHE_TTL_SECONDS", "5")
        monkeypatch.setenv("LOG_FORMAT", "text")

        config = ServerConfig.from_env()

        assert config.storage.backend == StorageBackend.MEMORY
        assert config.service.port == 6000
        assert config.cache.type_registry_ttl_seconds == 5
        assert config.observability.log_format == "text"

    def test_config_file(self, tmp_path):
        path = write_config(
            tmp_path,
            "storage:\n"
            "  port: 27018\n"
            "  database-name: inventory\n"
            "service.port: 7000\n"
            "cache:\n"
            "  type-registry:\n"
            "    ttl-seconds: 10\n",
        )

        config = ServerConfig.from_env(path)

        assert config.storage.port == 27018
        assert config.storage.database_name == "inventory"
        assert config.service.port == 7000
        assert config.cache.type_registry_ttl_seconds == 10

    def test_config_file_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_FILE_ENV, write_config(tmp_path, "service:\n  port: 7001\n"))

        assert ServerConfig.from_env().service.port == 7001

    def test_environment_wins_over_file(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, "service:\n  port: 7000\n")
        monkeypatch.setenv("SERVICE_PORT", "7002")

        assert ServerConfig.from_env(path).service.port == 7002

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "mongodb")

        with pytest.raises(ValueError, match="STORAGE_BACKEND"):
            ServerConfig.from_env()

    def test_non_integer_port(self, monkeypatch):
        monkeypatch.setenv("SERVICE_PORT", "http")

        with pytest.raises(ValueError, match="must be an integer"):
            ServerConfig.from_env()

    def test_storage_port_out_of_range(self, monkeypatch):
        monkeypatch.setenv("STORAGE_PORT", "0")

        with pytest.raises(ValueError, match="storage.port"):
            ServerConfig.from_env()

    def test_storage_host_and_port_reserved(self, monkeypatch, tmp_path):
        """The SQLite engine is built from data_dir alone."""
        monkeypatch.setenv("STORAGE_HOST", "db.internal")
        monkeypatch.setenv("STORAGE_PORT", "5432")

        store = create_document_store(ServerConfig.from_env())

        assert isinstance(store, SqliteDocumentStore)
        assert store.db_path.parent == tmp_path

    def test_service_port_zero_allowed(self, monkeypatch):
        monkeypatch.setenv("SERVICE_PORT", "0")

        assert ServerConfig.from_env().service.port == 0

    def test_ttl_above_limit(self, monkeypatch):
        monkeypatch.setenv("TYPE_REGISTRY_CACHE_TTL_SECONDS", "31")

        with pytest.raises(ValueError, match="ttl-seconds"):
            ServerConfig.from_env()

    def test_unknown_log_format(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "xml")

        with pytest.raises(ValueError, match="logging.format"):
            ServerConfig.from_env()

    def test_unknown_log_level(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "LOUD")

        with pytest.raises(ValueError, match="logging.level"):
            ServerConfig.from_env()

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(ValueError, match="Cannot read"):
            ServerConfig.from_env(str(tmp_path / "missing.yaml"))


class TestConfigFile:
    """Tests for load_config_file and flatten_settings."""

    def test_flatten(self):
        assert flatten_settings({"a": {"b": 1, "c": {"d": 2}}, "e": 3}) == {
            "a.b": 1,
            "a.c.d": 2,
            "e": 3,
        }

    def test_empty_file(self, tmp_path):
        assert load_config_file(write_config(tmp_path, "")) == {}

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(ValueError, match="mapping"):
            load_config_file(write_config(tmp_path, "- 1\n- 2\n"))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config_file(write_config(tmp_path, "a: [1, 2\n"))
