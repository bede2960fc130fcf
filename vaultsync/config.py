"""
Configuration management for vaultsync.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - The in-memory store is the default backend; nothing persists unless
      STORE_BACKEND=sqlite is set explicitly
    - The acting user id is never logged

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep every env var listed in the matching from_env()
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported document store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class StoreConfig:
    """Document store configuration.

    Attributes:
        backend: Which backend to use
        data_dir: Directory for the SQLite database file
        db_name: SQLite database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    backend: StoreBackend = StoreBackend.MEMORY
    data_dir: str = "./data"
    db_name: str = "vaultsync.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If STORE_BACKEND is not a supported backend
        """
        backend_str = os.getenv("STORE_BACKEND", "memory").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: memory, sqlite"
            )
        return cls(
            backend=backend,
            data_dir=os.getenv("DATA_DIR", "./data"),
            db_name=os.getenv("SQLITE_DB_NAME", "vaultsync.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class AuditConfig:
    """Audit log configuration.

    Attributes:
        enabled: Whether lifecycle events are appended at all
        dedup_window_ms: Window in which an identical event is a duplicate
    """

    enabled: bool = True
    dedup_window_ms: int = 5000

    @classmethod
    def from_env(cls) -> AuditConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=os.getenv("AUDIT_ENABLED", "true").lower() == "true",
            dedup_window_ms=int(os.getenv("AUDIT_DEDUP_WINDOW_MS", "5000")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Bind address
        port: Listen port
        cors_origins: Comma-separated list of allowed CORS origins
    """

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: str = "*"

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            cors_origins=os.getenv("HTTP_CORS_ORIGINS", "*"),
        )

    @property
    def origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


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
class VaultSyncConfig:
    """Complete configuration.

    Attributes:
        user_id: Static session identity (optional; the HTTP API reads
            identity from each request instead)
        store: Document store configuration
        audit: Audit log configuration
        http: HTTP API configuration
        observability: Logging configuration
    """

    user_id: str | None = None
    store: StoreConfig = field(default_factory=StoreConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> VaultSyncConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            user_id=os.getenv("VAULTSYNC_USER_ID") or None,
            store=StoreConfig.from_env(),
            audit=AuditConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.audit.dedup_window_ms < 0:
            raise ValueError("AUDIT_DEDUP_WINDOW_MS must be >= 0")
        if not 0 < self.http.port < 65536:
            raise ValueError(f"HTTP_PORT out of range: {self.http.port}")
        if self.store.busy_timeout_ms < 0:
            raise ValueError("SQLITE_BUSY_TIMEOUT_MS must be >= 0")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if self.store.backend == StoreBackend.SQLITE:
            if not self.store.db_name:
                raise ValueError("SQLITE_DB_NAME is required when STORE_BACKEND=sqlite")
            if not os.path.exists(self.store.data_dir):
                logger.warning(
                    f"Data directory does not exist: {self.store.data_dir}. "
                    "It will be created on connect."
                )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Configuration loaded",
            extra={
                "store_backend": self.store.backend.value,
                "data_dir": self.store.data_dir
                if self.store.backend == StoreBackend.SQLITE
                else None,
                "audit_enabled": self.audit.enabled,
                "audit_dedup_window_ms": self.audit.dedup_window_ms,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "static_identity": self.user_id is not None,
                "log_level": self.observability.log_level,
            },
        )
