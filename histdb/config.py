"""
Configuration management for HistDB.

All configuration is done via environment variables.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Changing the hash algorithm of an existing ledger invalidates its digests

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Never change a default that affects on-disk or hashed formats
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StorageBackend(Enum):
    """Supported record log backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class LedgerMode(Enum):
    """Ledger mutability.

    UPDATABLE ledgers accept supersede/close and record them as
    DELETE + INSERT entry pairs. APPEND_ONLY ledgers reject them.
    """

    UPDATABLE = "updatable"
    APPEND_ONLY = "append_only"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        backend: Record log backend
        data_dir: Directory for the SQLite database file
        db_filename: SQLite database file name inside data_dir
        wal_mode: SQLite WAL journal mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    backend: StorageBackend = StorageBackend.SQLITE
    data_dir: str = "./histdb-data"
    db_filename: str = "histdb.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("HISTDB_STORAGE_BACKEND", "sqlite").lower()
        try:
            backend = StorageBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid HISTDB_STORAGE_BACKEND '{backend_str}'. Must be one of: memory, sqlite"
            )
        return cls(
            backend=backend,
            data_dir=os.getenv("HISTDB_DATA_DIR", "./histdb-data"),
            db_filename=os.getenv("HISTDB_DB_FILENAME", "histdb.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class LedgerConfig:
    """Ledger configuration.

    Attributes:
        enabled: Whether mutations are hash-chained into a ledger
        mode: Updatable or append-only
        hash_algorithm: hashlib algorithm name with a fixed digest size
    """

    enabled: bool = True
    mode: LedgerMode = LedgerMode.UPDATABLE
    hash_algorithm: str = "sha256"

    @classmethod
    def from_env(cls) -> LedgerConfig:
        """Load configuration from environment variables."""
        mode_str = os.getenv("HISTDB_LEDGER_MODE", "updatable").lower()
        try:
            mode = LedgerMode(mode_str)
        except ValueError:
            raise ValueError(
                f"Invalid HISTDB_LEDGER_MODE '{mode_str}'. Must be one of: updatable, append_only"
            )
        return cls(
            enabled=os.getenv("HISTDB_LEDGER_ENABLED", "true").lower() == "true",
            mode=mode,
            hash_algorithm=os.getenv("HISTDB_HASH_ALGORITHM", "sha256").lower(),
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
class HistDbConfig:
    """Complete HistDB configuration.

    Attributes:
        storage: Record log configuration
        ledger: Ledger configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> HistDbConfig:
        """Load complete configuration from environment variables.

        Returns:
            HistDbConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            ledger=LedgerConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.storage.backend == StorageBackend.SQLITE:
            if not self.storage.data_dir:
                raise ValueError("HISTDB_DATA_DIR is required when HISTDB_STORAGE_BACKEND=sqlite")
            if not os.path.exists(self.storage.data_dir):
                logger.warning(
                    f"Data directory does not exist: {self.storage.data_dir}. "
                    "It will be created on first write."
                )

        if self.ledger.hash_algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unknown HISTDB_HASH_ALGORITHM '{self.ledger.hash_algorithm}'")
        # shake_* digests have no fixed size
        if hashlib.new(self.ledger.hash_algorithm).digest_size == 0:
            raise ValueError(
                f"HISTDB_HASH_ALGORITHM '{self.ledger.hash_algorithm}' has no fixed digest size"
            )

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(f"Invalid LOG_FORMAT '{self.observability.log_format}'")

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "HistDB configuration loaded",
            extra={
                "storage_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir
                if self.storage.backend == StorageBackend.SQLITE
                else None,
                "ledger_enabled": self.ledger.enabled,
                "ledger_mode": self.ledger.mode.value,
                "hash_algorithm": self.ledger.hash_algorithm,
                "log_level": self.observability.log_level,
            },
        )
