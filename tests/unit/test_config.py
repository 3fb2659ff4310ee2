"""
Unit tests for configuration.

Tests cover:
- RepositorySettings environment loading and validation
- StoreConfig defaults, environment loading and validation
"""

import logging

import pytest
from pydantic import ValidationError

from docrepo.config import RepositorySettings
from docrepo.query.plan import ViewBinding
from docrepo.store import Stale
from docstore.config import StoreConfig, setup_logging


class TestRepositorySettings:
    """Tests for RepositorySettings."""

    def test_defaults(self, monkeypatch):
        for name in ("DOCREPO_TYPE_KEY", "DOCREPO_DEFAULT_STALE", "DOCREPO_VIEW_BINDINGS"):
            monkeypatch.delenv(name, raising=False)

        settings = RepositorySettings()

        assert settings.type_key == "_class"
        assert settings.stale is Stale.FALSE
        assert settings.view_bindings == {}
        assert settings.default_view_limit is None

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DOCREPO_DEFAULT_STALE", "OK")
        monkeypatch.setenv("DOCREPO_VIEW_BINDINGS", '{"UserRepository.find_all": "user/all?limit=5"}')

        settings = RepositorySettings()

        assert settings.stale is Stale.OK
        assert settings.binding_for("UserRepository", "find_all") == ViewBinding("user", "all", limit=5)
        assert settings.binding_for("UserRepository", "count") is None

    def test_invalid_stale(self):
        with pytest.raises(ValidationError):
            RepositorySettings(default_stale="sometimes")

    def test_invalid_type_key(self):
        with pytest.raises(ValidationError):
            RepositorySettings(type_key="$.class")


class TestStoreConfig:
    """Tests for StoreConfig."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DOCSTORE_DATA_DIR", "/tmp/docs")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("SQLITE_BUSY_TIMEOUT_MS", "250")

        config = StoreConfig.from_env()

        assert config.data_dir == "/tmp/docs"
        assert config.wal_mode is False
        assert config.busy_timeout_ms == 250
        assert str(config.db_path) == "/tmp/docs/documents.db"

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            StoreConfig(log_format="xml")
        with pytest.raises(ValueError):
            StoreConfig(db_name="../escape.db")
        with pytest.raises(ValueError):
            StoreConfig(busy_timeout_ms=-1)

    def test_setup_logging(self):
        root = logging.getLogger()
        saved = (root.level, list(root.handlers))
        try:
            setup_logging(StoreConfig(log_level="debug", log_format="json"))

            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
        finally:
            root.setLevel(saved[0])
            root.handlers = saved[1]
