"""Unit tests for configuration loading."""

import pytest
from pydantic import ValidationError

from registry_watch.config.settings import (
    CheckpointMode,
    DatabaseSettings,
    RegistrySettings,
    Settings,
    TransportErrorPolicy,
    WatchSettings,
    get_settings,
    reload_settings,
)


class TestWatchSettings:
    """Test WatchSettings."""

    def test_defaults(self):
        """Test default watch settings."""
        settings = WatchSettings()
        assert settings.retry_backoff_pow == 2.0
        assert settings.retry_backoff_max_ms == 30000
        assert settings.batch_size == 1
        assert settings.include_docs is False
        assert settings.sequence_refresh_interval == 5.0
        assert settings.checkpoint_mode is CheckpointMode.FAST
        assert settings.transport_error_policy is TransportErrorPolicy.RECONNECT

    def test_environment_override(self, monkeypatch):
        """Test WATCH_ environment variables override defaults."""
        monkeypatch.setenv("WATCH_CHECKPOINT_MODE", "safe")
        monkeypatch.setenv("WATCH_RETRY_BACKOFF_POW", "3")
        monkeypatch.setenv("WATCH_TRANSPORT_ERROR_POLICY", "halt")

        settings = WatchSettings()

        assert settings.checkpoint_mode is CheckpointMode.SAFE
        assert settings.retry_backoff_pow == 3.0
        assert settings.transport_error_policy is TransportErrorPolicy.HALT

    @pytest.mark.parametrize("field,value", [
        ("retry_backoff_pow", 0),
        ("retry_backoff_max_ms", 0),
        ("batch_size", 0),
        ("sequence_refresh_interval", 0),
        ("side_task_workers", 1),
        ("checkpoint_mode", "eventually"),
    ])
    def test_invalid_values(self, field, value):
        """Test out-of-range values fail validation."""
        with pytest.raises(ValidationError):
            WatchSettings(**{field: value})


class TestRegistrySettings:
    """Test RegistrySettings."""

    def test_default_registry(self):
        """Test the npm replicate registry is the default."""
        assert RegistrySettings().url == "https://replicate.npmjs.com/registry"

    def test_request_timeout_must_outwait_long_poll(self):
        """Test request_timeout must exceed the long-poll timeout."""
        with pytest.raises(ValidationError, match="request_timeout must exceed"):
            RegistrySettings(longpoll_timeout_ms=60000, request_timeout=30)


class TestDatabaseSettings:
    """Test DatabaseSettings."""

    def test_url_from_components(self):
        """Test the connection URL is built from its parts."""
        settings = DatabaseSettings(host="db", port=5433, user="u", password="p", database="w")
        assert settings.connection_url == "postgresql://u:p@db:5433/w"

    def test_explicit_url_wins(self):
        """Test an explicit URL overrides the parts."""
        assert DatabaseSettings(url="sqlite:///watch.db").connection_url == "sqlite:///watch.db"


class TestSettings:
    """Test root Settings."""

    def test_environment_validated(self):
        """Test unknown environments are rejected."""
        with pytest.raises(ValidationError):
            Settings(environment="qa")

    def test_environment_normalised(self):
        """Test environment is lower-cased."""
        settings = Settings(environment="Production")
        assert settings.environment == "production"
        assert settings.is_production

    def test_singleton(self, monkeypatch):
        """Test reload_settings refreshes the cached settings."""
        monkeypatch.setenv("WATCH_BATCH_SIZE", "5")
        settings = reload_settings()
        assert get_settings() is settings
        assert settings.watch.batch_size == 5
