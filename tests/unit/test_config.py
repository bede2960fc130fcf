"""
Unit tests for environment-driven configuration.
"""

import pytest

from vaultsync.config import (
    AuditConfig,
    HttpConfig,
    StoreBackend,
    StoreConfig,
    VaultSyncConfig,
)


class TestFromEnv:
    """Tests for from_env() loaders."""

    def test_defaults(self, monkeypatch):
        for name in ("STORE_BACKEND", "VAULTSYNC_USER_ID", "AUDIT_DEDUP_WINDOW_MS", "HTTP_PORT"):
            monkeypatch.delenv(name, raising=False)

        config = VaultSyncConfig.from_env()
        assert config.user_id is None
        assert config.store.backend == StoreBackend.MEMORY
        assert config.audit.dedup_window_ms == 5000
        assert config.http.port == 8080

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "SQLite")
        monkeypatch.setenv("DATA_DIR", "/tmp/vaultsync-test")
        monkeypatch.setenv("AUDIT_ENABLED", "false")
        monkeypatch.setenv("AUDIT_DEDUP_WINDOW_MS", "250")
        monkeypatch.setenv("VAULTSYNC_USER_ID", "u1")

        config = VaultSyncConfig.from_env()
        assert config.store.backend == StoreBackend.SQLITE
        assert config.store.data_dir == "/tmp/vaultsync-test"
        assert config.audit == AuditConfig(enabled=False, dedup_window_ms=250)
        assert config.user_id == "u1"

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "firestore")
        with pytest.raises(ValueError, match="Invalid STORE_BACKEND"):
            StoreConfig.from_env()

    def test_origins_are_split(self):
        config = HttpConfig(cors_origins="https://a.example, https://b.example,")
        assert config.origins == ["https://a.example", "https://b.example"]


class TestValidate:
    """Tests for VaultSyncConfig.validate()."""

    @pytest.mark.parametrize(
        "config",
        [
            VaultSyncConfig(audit=AuditConfig(dedup_window_ms=-1)),
            VaultSyncConfig(http=HttpConfig(port=0)),
            VaultSyncConfig(store=StoreConfig(busy_timeout_ms=-5)),
            VaultSyncConfig(store=StoreConfig(backend=StoreBackend.SQLITE, db_name="")),
        ],
    )
    def test_rejects(self, config):
        with pytest.raises(ValueError):
            config.validate()

    def test_rejects_log_format(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "xml")
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            VaultSyncConfig.from_env()

    def test_defaults_are_valid(self):
        VaultSyncConfig().validate()
