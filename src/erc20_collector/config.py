"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
ERC20 transfer collector, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class ClickHouseSettings(BaseSettings):
    """ClickHouse connection settings."""

    model_config = SettingsConfigDict(env_prefix="CLICKHOUSE_", extra="ignore")

    host: str = Field(
        default="localhost",
        alias="CLICKHOUSE_HOST",
        description="ClickHouse server host",
    )
    port: int = Field(
        default=8123,
        alias="CLICKHOUSE_PORT",
        ge=1,
        le=65535,
        description="ClickHouse HTTP interface port",
    )
    username: str = Field(
        default="default",
        alias="CLICKHOUSE_USERNAME",
        description="ClickHouse user",
    )
    password: SecretStr | None = Field(
        default=None,
        alias="CLICKHOUSE_PASSWORD",
        description="ClickHouse password",
    )
    database: str = Field(
        default="token_intelligence",
        alias="CLICKHOUSE_DATABASE",
        description="Database holding the per-chain transfer tables",
    )
    secure: bool = Field(
        default=False,
        alias="CLICKHOUSE_SECURE",
        description="Use HTTPS for the ClickHouse connection",
    )

    @field_validator("database")
    @classmethod
    def validate_database(cls, v: str) -> str:
        """Database names are interpolated into DDL, so keep them plain identifiers."""
        if not v.replace("_", "").isalnum():
            raise ValueError("CLICKHOUSE_DATABASE must be a plain identifier")
        return v


class SourceSettings(BaseSettings):
    """Event source (JSON-RPC) settings."""

    model_config = SettingsConfigDict(env_prefix="RPC_", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="RPC_URL",
        description="Override for the chain's default JSON-RPC endpoint",
    )
    page_size_blocks: int = Field(
        default=2000,
        alias="RPC_PAGE_SIZE_BLOCKS",
        ge=1,
        le=100_000,
        description="Block range requested per eth_getLogs page",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="RPC_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=10_000.0,
        description="Client-side rate limit for RPC calls",
    )
    request_timeout_seconds: int = Field(
        default=30,
        alias="RPC_REQUEST_TIMEOUT_SECONDS",
        ge=1,
        le=600,
        description="HTTP timeout for a single RPC call",
    )
    max_concurrent_block_requests: int = Field(
        default=8,
        alias="RPC_MAX_CONCURRENT_BLOCK_REQUESTS",
        ge=1,
        le=256,
        description="Block header lookups in flight while resolving a page's timestamps",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class IngestSettings(BaseSettings):
    """Ingestion loop settings."""

    model_config = SettingsConfigDict(env_prefix="INGEST_", extra="ignore")

    batch_size: int = Field(
        default=1000,
        alias="INGEST_BATCH_SIZE",
        ge=1,
        le=1_000_000,
        description="Records buffered before a batch is flushed to ClickHouse",
    )
    start_block: int = Field(
        default=0,
        alias="INGEST_START_BLOCK",
        ge=0,
        description="First block to request on a fresh run",
    )
    stop_block: int | None = Field(
        default=None,
        alias="INGEST_STOP_BLOCK",
        ge=0,
        description="Optional last block to request; defaults to the chain tip",
    )


class CheckpointSettings(BaseSettings):
    """Cursor checkpoint settings (Redis)."""

    model_config = SettingsConfigDict(env_prefix="CHECKPOINT_", extra="ignore")

    enabled: bool = Field(
        default=False,
        alias="CHECKPOINT_ENABLED",
        description="Persist the cursor to Redis and resume from it on restart",
    )
    redis_url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    key_prefix: str = Field(
        default="erc20_collector:cursor:",
        alias="CHECKPOINT_KEY_PREFIX",
        description="Redis key prefix; the chain id is appended",
    )

    @field_validator("redis_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from erc20_collector.config import get_settings

        settings = get_settings()
        print(settings.clickhouse.host)
        print(settings.ingest.batch_size)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    clickhouse: ClickHouseSettings = Field(
        default_factory=lambda: ClickHouseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    source: SourceSettings = Field(
        default_factory=lambda: SourceSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ingest: IngestSettings = Field(
        default_factory=lambda: IngestSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    checkpoint: CheckpointSettings = Field(
        default_factory=lambda: CheckpointSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "clickhouse": {
                "host": self.clickhouse.host,
                "port": str(self.clickhouse.port),
                "username": self.clickhouse.username,
                "password": "(set)" if self.clickhouse.password else "(not set)",
                "database": self.clickhouse.database,
                "secure": str(self.clickhouse.secure),
            },
            "source": {
                "url": self._redact_url(self.source.url) if self.source.url else "(chain default)",
                "page_size_blocks": str(self.source.page_size_blocks),
                "max_requests_per_second": str(self.source.max_requests_per_second),
                "max_concurrent_block_requests": str(self.source.max_concurrent_block_requests),
            },
            "ingest": {
                "batch_size": str(self.ingest.batch_size),
                "start_block": str(self.ingest.start_block),
                "stop_block": str(self.ingest.stop_block) if self.ingest.stop_block is not None else "(tip)",
            },
            "checkpoint": {
                "enabled": str(self.checkpoint.enabled),
                "redis_url": self._redact_url(self.checkpoint.redis_url),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
