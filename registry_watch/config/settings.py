"""
Centralized configuration management for Registry Watch.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
from enum import Enum
from typing import Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CheckpointMode(str, Enum):
    """When the checkpoint is written relative to the forward of a change."""
    FAST = "fast"  # concurrently with the forward
    SAFE = "safe"  # only after the forward was accepted


class TransportErrorPolicy(str, Enum):
    """What the feed does after reporting a transport error."""
    RECONNECT = "reconnect"
    HALT = "halt"


class DatabaseSettings(BaseSettings):
    """SQL database holding the checkpoint and the forwarding queue."""

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Connection URL (preferred) or individual components
    url: Optional[str] = Field(
        default=None,
        description="Full database connection URL. Overrides individual fields if set."
    )

    host: str = Field(default="localhost", description="PostgreSQL host")
    port: int = Field(default=5432, description="PostgreSQL port")
    user: str = Field(default="user", description="PostgreSQL username")
    password: str = Field(default="pass", description="PostgreSQL password")
    database: str = Field(default="registry_watch", description="PostgreSQL database name")

    # Connection pool settings
    pool_size: int = Field(default=5, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Max overflow connections")

    @property
    def connection_url(self) -> str:
        """Get the database connection URL."""
        if self.url:
            return self.url
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


class RegistrySettings(BaseSettings):
    """Replicated registry database exposing the `_changes` feed."""

    model_config = SettingsConfigDict(
        env_prefix="REGISTRY_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(
        default="https://replicate.npmjs.com/registry",
        description="Base URL of the registry database"
    )
    longpoll_timeout_ms: int = Field(
        default=60000,
        description="Server-side long-poll timeout in milliseconds"
    )
    request_timeout: float = Field(
        default=90.0,
        description="Client-side HTTP timeout in seconds"
    )
    user_agent: str = Field(default="registry-watch", description="User-Agent header")

    @model_validator(mode="after")
    def validate_timeouts(self) -> "RegistrySettings":
        """The client must outwait the server's long-poll."""
        if self.longpoll_timeout_ms <= 0:
            raise ValueError("longpoll_timeout_ms must be positive")
        if self.request_timeout * 1000 <= self.longpoll_timeout_ms:
            raise ValueError("request_timeout must exceed longpoll_timeout_ms")
        return self


class WatchSettings(BaseSettings):
    """Change consumer configuration."""

    model_config = SettingsConfigDict(
        env_prefix="WATCH_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Retry settings
    retry_backoff_pow: float = Field(default=2.0, gt=0, description="Backoff exponent")
    retry_backoff_max_ms: int = Field(default=30000, gt=0, description="Backoff cap in milliseconds")

    # Feed settings
    batch_size: int = Field(default=1, gt=0, description="Changes requested per long-poll")
    include_docs: bool = Field(default=False, description="Ask the feed for full documents")
    transport_error_policy: TransportErrorPolicy = Field(
        default=TransportErrorPolicy.RECONNECT,
        description="Reconnect or halt after a feed transport error"
    )
    reconnect_backoff_max_ms: int = Field(
        default=60000,
        gt=0,
        description="Cap on the wait between feed reconnect attempts"
    )

    # Progress settings
    sequence_refresh_interval: float = Field(
        default=5.0,
        gt=0,
        description="Seconds between refreshes of the feed's head sequence"
    )

    # Checkpoint settings
    checkpoint_mode: CheckpointMode = Field(
        default=CheckpointMode.FAST,
        description="fast: save concurrently with the forward, safe: after it"
    )
    checkpoint_name: str = Field(default="watch", description="Checkpoint row key")

    side_task_workers: int = Field(
        default=4,
        ge=2,
        description="Thread pool size for checkpoint saves and progress reports"
    )


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    environment: str = Field(default="development", description="Application environment")
    debug: bool = Field(default=False, description="Debug mode")

    # Sub-configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "staging", "production"}
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
