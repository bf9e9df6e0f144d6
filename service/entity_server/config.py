"""
Configuration management for the entity service.

Settings come from environment variables. An optional YAML file named by
ENTITY_SERVICE_CONFIG supplies defaults under dotted keys (nested mappings
are flattened, so ``storage: {port: 27017}`` and ``storage.port: 27017`` are
equivalent). Environment variables always win over the file.

    Key                               Env var
    storage.backend                   STORAGE_BACKEND
    storage.host                      STORAGE_HOST
    storage.port                      STORAGE_PORT
    storage.database-name             STORAGE_DATABASE_NAME
    storage.data-dir                  STORAGE_DATA_DIR
    service.host                      SERVICE_HOST
    service.port                      SERVICE_PORT
    cache.type-registry.ttl-seconds   TYPE_REGISTRY_CACHE_TTL_SECONDS
    logging.level                     LOG_LEVEL
    logging.format                    LOG_FORMAT

Invariants:
    - All settings have sensible defaults for local development
    - Any invalid value raises ValueError (the process exits with status 1)
    - The type registry cache TTL never exceeds 30 seconds

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep the dotted key and the env var name in the table above in sync
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILE_ENV = "ENTITY_SERVICE_CONFIG"
MAX_TYPE_CACHE_TTL_SECONDS = 30

Settings = Mapping[str, Any]


class StorageBackend(Enum):
    """Supported document store engines."""

    SQLITE = "sqlite"
    MEMORY = "memory"


def _setting(settings: Optional[Settings], env: str, key: str, default: str) -> str:
    value = os.getenv(env)
    if value is not None:
        return value
    if settings and key in settings and settings[key] is not None:
        return str(settings[key])
    return default


def _int_setting(settings: Optional[Settings], env: str, key: str, default: int) -> int:
    raw = _setting(settings, env, key, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{env} ({key}) must be an integer, got '{raw}'")


@dataclass(frozen=True)
class StorageConfig:
    """Document store configuration.

    Attributes:
        backend: Engine to use
        host: Document store host. Reserved for a networked engine; the
            sqlite and memory engines ignore it, but it is still validated
        port: Document store port. Reserved like host
        database_name: Logical database name (SQLite file name stem)
        data_dir: Directory for SQLite databases
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cursor_batch_size: Rows fetched per round trip when streaming
    """

    backend: StorageBackend = StorageBackend.SQLITE
    host: str = "localhost"
    port: int = 27017
    database_name: str = "entity_service"
    data_dir: str = "/var/lib/entity-service"
    busy_timeout_ms: int = 5000
    cursor_batch_size: int = 100

    @classmethod
    def from_env(cls, settings: Optional[Settings] = None) -> StorageConfig:
        """Load configuration from environment variables."""
        backend_str = _setting(settings, "STORAGE_BACKEND", "storage.backend", "sqlite").lower()
        try:
            backend = StorageBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STORAGE_BACKEND '{backend_str}'. Must be one of: sqlite, memory"
            )
        return cls(
            backend=backend,
            host=_setting(settings, "STORAGE_HOST", "storage.host", "localhost"),
            port=_int_setting(settings, "STORAGE_PORT", "storage.port", 27017),
            database_name=_setting(
                settings, "STORAGE_DATABASE_NAME", "storage.database-name", "entity_service"
            ),
            data_dir=_setting(
                settings, "STORAGE_DATA_DIR", "storage.data-dir", "/var/lib/entity-service"
            ),
            busy_timeout_ms=_int_setting(
                settings, "SQLITE_BUSY_TIMEOUT_MS", "storage.busy-timeout-ms", 5000
            ),
            cursor_batch_size=_int_setting(
                settings, "STORAGE_CURSOR_BATCH_SIZE", "storage.cursor-batch-size", 100
            ),
        )


@dataclass(frozen=True)
class ServiceConfig:
    """gRPC service configuration.

    Attributes:
        host: Address to bind
        port: Port to bind (0 picks an ephemeral port)
        max_message_size: Maximum message size in bytes
        grace_seconds: Time allowed for in-flight RPCs on shutdown
    """

    host: str = "0.0.0.0"
    port: int = 50061
    max_message_size: int = 16 * 1024 * 1024  # 16MB
    grace_seconds: float = 5.0

    @classmethod
    def from_env(cls, settings: Optional[Settings] = None) -> ServiceConfig:
        """Load configuration from environment variables."""
        return cls(
            host=_setting(settings, "SERVICE_HOST", "service.host", "0.0.0.0"),
            port=_int_setting(settings, "SERVICE_PORT", "service.port", 50061),
            max_message_size=_int_setting(
                settings, "SERVICE_MAX_MESSAGE_SIZE", "service.max-message-size", 16 * 1024 * 1024
            ),
            grace_seconds=float(
                _setting(settings, "SERVICE_GRACE_SECONDS", "service.grace-seconds", "5")
            ),
        )

    @property
    def bind_address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class CacheConfig:
    """Cache configuration.

    Attributes:
        type_registry_ttl_seconds: Entity type cache TTL (0 disables)
    """

    type_registry_ttl_seconds: int = 30

    @classmethod
    def from_env(cls, settings: Optional[Settings] = None) -> CacheConfig:
        """Load configuration from environment variables."""
        return cls(
            type_registry_ttl_seconds=_int_setting(
                settings,
                "TYPE_REGISTRY_CACHE_TTL_SECONDS",
                "cache.type-registry.ttl-seconds",
                30,
            ),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls, settings: Optional[Settings] = None) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=_setting(settings, "LOG_LEVEL", "logging.level", "INFO"),
            log_format=_setting(settings, "LOG_FORMAT", "logging.format", "json").lower(),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        storage: Document store configuration
        service: gRPC service configuration
        cache: Cache configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls, config_file: Optional[str] = None) -> ServerConfig:
        """Load complete configuration.

        Args:
            config_file: Optional YAML file; defaults to $ENTITY_SERVICE_CONFIG

        Returns:
            ServerConfig with all sections populated.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        path = config_file or os.getenv(CONFIG_FILE_ENV)
        settings = load_config_file(path) if path else {}

        config = cls(
            storage=StorageConfig.from_env(settings),
            service=ServiceConfig.from_env(settings),
            cache=CacheConfig.from_env(settings),
            observability=ObservabilityConfig.from_env(settings),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not 0 < self.storage.port < 65536:
            raise ValueError(f"storage.port must be in 1..65535, got {self.storage.port}")
        if not self.storage.host:
            raise ValueError("storage.host must not be empty")
        if not self.storage.database_name:
            raise ValueError("storage.database-name must not be empty")
        if not 0 <= self.service.port < 65536:
            raise ValueError(f"service.port must be in 0..65535, got {self.service.port}")
        if self.storage.cursor_batch_size <= 0:
            raise ValueError("storage.cursor-batch-size must be positive")

        ttl = self.cache.type_registry_ttl_seconds
        if not 0 <= ttl <= MAX_TYPE_CACHE_TTL_SECONDS:
            raise ValueError(
                f"cache.type-registry.ttl-seconds must be in 0..{MAX_TYPE_CACHE_TTL_SECONDS}, "
                f"got {ttl}"
            )

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"logging.format must be 'json' or 'text', got '{self.observability.log_format}'"
            )
        if not isinstance(logging.getLevelName(self.observability.log_level.upper()), int):
            raise ValueError(f"Unknown logging.level '{self.observability.log_level}'")

        if self.storage.backend == StorageBackend.SQLITE and not os.path.exists(
            self.storage.data_dir
        ):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "storage_backend": self.storage.backend.value,
                "storage_host": self.storage.host,
                "storage_port": self.storage.port,
                "database_name": self.storage.database_name,
                "data_dir": self.storage.data_dir,
                "bind_address": self.service.bind_address,
                "type_cache_ttl_seconds": self.cache.type_registry_ttl_seconds,
                "log_level": self.observability.log_level,
            },
        )


def load_config_file(path: str) -> dict[str, Any]:
    """Read a YAML config file into a flat {dotted.key: value} mapping.

    Raises:
        ValueError: If the file cannot be read or is not a YAML mapping
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return flatten_settings(data)


def flatten_settings(data: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested mappings into dotted keys.

    Example:
        >>> flatten_settings({"cache": {"type-registry": {"ttl-seconds": 10}}})
        {'cache.type-registry.ttl-seconds': 10}
    """
    flat: dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(flatten_settings(value, prefix=f"{dotted}."))
        else:
            flat[dotted] = value
    return flat
