"""
Configuration management for dataman.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for a single-host deployment
    - The data directory holds the registry file and every dataset file
    - Size ceilings are declared once, at environment open time

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Never change the default file names; existing data would be orphaned
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .errors import ConfigError

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(name, raw, "an integer") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "true" if default else "false")
    lowered = raw.lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ConfigError(name, raw, "true or false")


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory holding the registry and dataset files
        registry_db_name: File name of the registry store
        dataset_db_pattern: File name pattern for per-dataset stores
        registry_max_bytes: Size ceiling of the registry store
        dataset_max_bytes: Size ceiling of each dataset store
        max_tables: Maximum named tables per store
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/dataman"
    registry_db_name: str = "application.db"
    dataset_db_pattern: str = "ds_{dataset_id}.db"
    registry_max_bytes: int = 5_000_000_000_000
    dataset_max_bytes: int = 500_000_000_000
    max_tables: int = 25
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATAMAN_DATA_DIR", "/var/lib/dataman"),
            registry_db_name=os.getenv("DATAMAN_REGISTRY_DB_NAME", "application.db"),
            dataset_db_pattern=os.getenv("DATAMAN_DATASET_DB_PATTERN", "ds_{dataset_id}.db"),
            registry_max_bytes=_env_int("DATAMAN_REGISTRY_MAX_BYTES", 5_000_000_000_000),
            dataset_max_bytes=_env_int("DATAMAN_DATASET_MAX_BYTES", 500_000_000_000),
            max_tables=_env_int("DATAMAN_MAX_TABLES", 25),
            wal_mode=_env_bool("DATAMAN_SQLITE_WAL_MODE", True),
            busy_timeout_ms=_env_int("DATAMAN_SQLITE_BUSY_TIMEOUT_MS", 5000),
        )


@dataclass(frozen=True)
class InventoryConfig:
    """zfs command line configuration.

    Attributes:
        zfs_binary: Path or name of the zfs executable
        policy_property: User property carrying declared snapshot policies
        id_property: User property carrying the dataset identity
        timeout_seconds: Timeout for each zfs invocation
    """

    zfs_binary: str = "zfs"
    policy_property: str = "com.dataman:auto-snapshot"
    id_property: str = "com.dataman:uuid"
    timeout_seconds: int = 60

    @classmethod
    def from_env(cls) -> InventoryConfig:
        """Load configuration from environment variables."""
        return cls(
            zfs_binary=os.getenv("DATAMAN_ZFS_BINARY", "zfs"),
            policy_property=os.getenv("DATAMAN_POLICY_PROPERTY", "com.dataman:auto-snapshot"),
            id_property=os.getenv("DATAMAN_ID_PROPERTY", "com.dataman:uuid"),
            timeout_seconds=_env_int("DATAMAN_ZFS_TIMEOUT_SECONDS", 60),
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
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class DatamanConfig:
    """Complete dataman configuration.

    Attributes:
        storage: Local storage configuration
        inventory: zfs command line configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    inventory: InventoryConfig = field(default_factory=InventoryConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> DatamanConfig:
        """Load complete configuration from environment variables.

        Returns:
            DatamanConfig with all sections populated from environment.

        Raises:
            ConfigError: If a value is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            inventory=InventoryConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigError: If configuration is invalid.
        """
        if "{dataset_id}" not in self.storage.dataset_db_pattern:
            raise ConfigError(
                "DATAMAN_DATASET_DB_PATTERN",
                self.storage.dataset_db_pattern,
                "a pattern containing {dataset_id}",
            )
        if self.storage.registry_db_name == self.storage.dataset_db_pattern:
            raise ConfigError(
                "DATAMAN_REGISTRY_DB_NAME",
                self.storage.registry_db_name,
                "a name distinct from the dataset pattern",
            )
        for name, value in (
            ("DATAMAN_REGISTRY_MAX_BYTES", self.storage.registry_max_bytes),
            ("DATAMAN_DATASET_MAX_BYTES", self.storage.dataset_max_bytes),
            ("DATAMAN_MAX_TABLES", self.storage.max_tables),
        ):
            if value <= 0:
                raise ConfigError(name, str(value), "a positive integer")
        if self.observability.log_format not in ("json", "text"):
            raise ConfigError("LOG_FORMAT", self.observability.log_format, "json or text")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first open."
            )

    def log_config(self) -> None:
        """Log the effective configuration."""
        logger.info(
            "dataman configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "registry_db_name": self.storage.registry_db_name,
                "dataset_db_pattern": self.storage.dataset_db_pattern,
                "wal_mode": self.storage.wal_mode,
                "zfs_binary": self.inventory.zfs_binary,
                "policy_property": self.inventory.policy_property,
                "id_property": self.inventory.id_property,
                "log_level": self.observability.log_level,
            },
        )
