"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Coin Indexer application, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from coin_indexer.errors import ConfigurationError, DuplicateContractError
from coin_indexer.indexer.models import ContractDescriptor

logger = logging.getLogger(__name__)

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

Command = Literal["index", "init-db", "add-contract", "deactivate-contract", "status"]


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements for debugging",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(
            ("postgresql://", "postgresql+asyncpg://", "sqlite://", "sqlite+aiosqlite://")
        ):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional block-timestamp cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v

    @property
    def enabled(self) -> bool:
        """Check if Redis caching is enabled."""
        return self.url is not None


class ChainSettings(BaseSettings):
    """EVM chain RPC settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=10_000.0,
        description="Client-side rate limit for RPC calls",
    )
    max_retries: int = Field(
        default=1,
        alias="CHAIN_MAX_RETRIES",
        ge=1,
        le=10,
        description="Attempts per endpoint within one call (the poll tick is the main retry)",
    )
    poa: bool = Field(
        default=False,
        alias="CHAIN_POA",
        description="Inject the proof-of-authority extraData middleware",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class ContractSettings(BaseModel):
    """One configured contract. Address format is checked per contract at startup."""

    name: str = Field(min_length=1)
    address: str = Field(min_length=1)
    start_block: int = Field(default=0, ge=0)


class IndexerSettings(BaseSettings):
    """Polling and chunking settings for the ingestion engine."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    poll_interval_seconds: float = Field(
        default=15.0,
        alias="INDEXER_POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Delay between polling ticks for every contract",
    )
    max_chunk_blocks: int = Field(
        default=1000,
        alias="INDEXER_MAX_CHUNK_BLOCKS",
        ge=1,
        le=500_000,
        description="Maximum width of a single eth_getLogs block range",
    )
    confirmations: int = Field(
        default=0,
        alias="INDEXER_CONFIRMATIONS",
        ge=0,
        le=1000,
        description="Blocks to stay behind the chain head",
    )
    registry_refresh_seconds: float = Field(
        default=30.0,
        alias="INDEXER_REGISTRY_REFRESH_SECONDS",
        gt=0.0,
        le=86_400.0,
        description="How often to pick up contracts registered in the database",
    )
    timestamp_cache_ttl_seconds: int = Field(
        default=3600,
        alias="INDEXER_TIMESTAMP_CACHE_TTL_SECONDS",
        ge=1,
        description="Redis TTL for cached block timestamps",
    )
    contracts: list[ContractSettings] = Field(
        default_factory=list,
        alias="INDEXER_CONTRACTS",
        description='JSON list of {"name", "address", "start_block"} objects',
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from coin_indexer.config import get_settings

        settings = get_settings()
        print(settings.chain.rpc_url)
        print(settings.indexer.max_chunk_blocks)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
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
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self.chain.rpc_url or "(not set)",
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
                "max_retries": str(self.chain.max_retries),
            },
            "indexer": {
                "poll_interval_seconds": str(self.indexer.poll_interval_seconds),
                "max_chunk_blocks": str(self.indexer.max_chunk_blocks),
                "confirmations": str(self.indexer.confirmations),
                "contracts": str(len(self.indexer.contracts)),
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Command) -> None:
        """Validate command-specific requirements.

        Only the `index` command talks to the chain, so the RPC endpoint is
        required there and nowhere else.
        """
        if command == "index" and not self.chain.rpc_url:
            raise ValueError("CHAIN_RPC_URL is required for the index command")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


def load_contract_descriptors(contracts: Sequence[ContractSettings]) -> list[ContractDescriptor]:
    """Validate configured contracts into descriptors.

    An invalid or duplicate entry only disables that contract: it is logged
    and left out, and the remaining contracts still load.
    """
    descriptors: list[ContractDescriptor] = []
    seen: set[str] = set()
    for entry in contracts:
        try:
            descriptor = ContractDescriptor.create(
                name=entry.name,
                address=entry.address,
                start_block=entry.start_block,
            )
            if descriptor.address in seen:
                raise DuplicateContractError(descriptor.address)
        except ConfigurationError as e:
            logger.error("Skipping configured contract %r: %s", entry.name, e)
            continue
        seen.add(descriptor.address)
        descriptors.append(descriptor)
    return descriptors


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
