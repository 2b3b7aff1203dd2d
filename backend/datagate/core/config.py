"""
Centralized configuration management using Pydantic Settings.

This module provides type-safe configuration management with validation,
loading settings from environment variables and .env files.
"""

from typing import List, Literal
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import json


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Secrets should never be committed to code - use .env file (gitignored).
    """

    # API Configuration
    api_prefix: str = Field(
        default="/api",
        description="Prefix for all entity endpoints"
    )
    project_name: str = Field(
        default="Datagate",
        description="Project name displayed in API docs"
    )
    environment: Literal["development", "test", "production"] = Field(
        default="development",
        description="Deployment environment (stack traces are only exposed in development)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/datagate.db",
        description="Database connection URL (SQLite for development, PostgreSQL for production)"
    )
    database_echo: bool = Field(
        default=False,
        description="Log every SQL statement emitted by the engine (debug only)"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Root log level"
    )
    log_json: bool = Field(
        default=True,
        description="Emit structured JSON logs (False for plain text during development)"
    )
    slow_request_ms: float = Field(
        default=1000.0,
        gt=0,
        description="Requests slower than this are logged at WARNING"
    )

    # CORS Configuration
    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins (frontend URLs)"
    )

    # Rate Limiting
    rate_limit_enabled: bool = Field(
        default=True,
        description="Enable per-client rate limiting on all endpoints"
    )
    rate_limit_requests: int = Field(
        default=100,
        gt=0,
        description="Requests allowed per client within one window"
    )
    rate_limit_window_seconds: int = Field(
        default=900,
        gt=0,
        description="Rate limit window length in seconds (default: 15 minutes)"
    )

    # Query Translation
    default_page_size: int = Field(
        default=10,
        gt=0,
        description="Page size used when the caller does not pass 'limit'"
    )
    max_json_param_length: int = Field(
        default=10_000,
        gt=0,
        description="Longest string that will be JSON-decoded from a query parameter"
    )

    # Transactions
    tx_max_retries: int = Field(
        default=3,
        ge=1,
        description="Maximum attempts for one transactional unit of work"
    )
    tx_timeout_ms: int = Field(
        default=5000,
        gt=0,
        description="Per-attempt transaction timeout in milliseconds"
    )
    tx_backoff_base_ms: int = Field(
        default=100,
        ge=0,
        description="Base delay for exponential backoff between attempts"
    )
    tx_isolation_level: str = Field(
        default="SERIALIZABLE",
        description="Default isolation level for transactional units of work"
    )

    # Bulk operations
    bulk_concurrency: int = Field(
        default=5,
        gt=0,
        description="Maximum number of per-item writes in flight during partial-success bulk create"
    )

    # File storage
    file_storage_root: str = Field(
        default="",
        description="Directory holding uploaded files (empty disables file cleanup)"
    )
    file_public_base_url: str = Field(
        default="/files",
        description="Public URL prefix under which stored files are served"
    )

    # Pydantic Settings Configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra environment variables
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | List[str]) -> List[str]:
        """
        Parse cors_origins from JSON string or list.

        Supports comma-separated origins for easier .env configuration.
        """
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                # Fallback: split by comma if not valid JSON
                return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """
        Validate database URL format.

        Only async drivers are accepted since every store round-trip is awaited.
        """
        if not v or v.strip() == "":
            raise ValueError("DATABASE_URL is required and cannot be empty")

        valid_schemes = ["sqlite+aiosqlite", "postgresql+asyncpg"]
        if not any(v.startswith(scheme + "://") for scheme in valid_schemes):
            raise ValueError(
                f"DATABASE_URL must start with one of: {', '.join(valid_schemes)}. "
                f"Got: {v[:20]}..."
            )

        return v

    @field_validator("tx_isolation_level")
    @classmethod
    def validate_isolation_level(cls, v: str) -> str:
        """Normalize and check the default isolation level."""
        normalized = v.strip().upper().replace("_", " ")
        allowed = {"READ COMMITTED", "REPEATABLE READ", "SERIALIZABLE"}
        if normalized not in allowed:
            raise ValueError(
                f"TX_ISOLATION_LEVEL must be one of: {', '.join(sorted(allowed))}"
            )
        return normalized

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"LOG_LEVEL is not a valid level: {v}")
        return level


APP_VERSION = "0.1.0"


# Global settings instance
# Import this instance throughout the application
settings = Settings()
