"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and not os.getenv("TESTING"):
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment."""

    return AppSettings()


def _build_limiter_settings() -> "LimiterSettings":
    return LimiterSettings()


def _build_redis_settings() -> "RedisSettings":
    return RedisSettings()


def _build_log_settings() -> "LogSettings":
    return LogSettings()


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key_required: bool = Field(
        True,
        description="Whether API key authentication is required on admin routes",
    )
    api_keys: str | None = Field(
        None,
        description="Comma-separated list of valid API keys for authentication",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LimiterSettings(BaseSettings):
    """Admission-control policy and per-call-site defaults."""

    enabled: bool = Field(
        True,
        description="Enforce rate limits on gated HTTP routes",
    )
    fail_open: bool = Field(
        True,
        description="Allow requests when the shared store is unavailable",
    )
    local_reap_interval_ms: int = Field(
        60_000,
        description="Minimum interval between sweeps of empty in-memory keys",
        ge=1,
    )
    global_max_requests: int = Field(
        100,
        description="Requests allowed per window for the global per-IP policy",
        ge=1,
    )
    global_window_ms: int = Field(
        60_000,
        description="Window size in milliseconds for the global per-IP policy",
        ge=1,
    )
    admin_max_requests: int = Field(
        10,
        description="Requests allowed per window for the per-admin policy",
        ge=1,
    )
    admin_window_ms: int = Field(
        60_000,
        description="Window size in milliseconds for the per-admin policy",
        ge=1,
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* headers when throttling",
    )

    model_config = SettingsConfigDict(
        env_prefix="LIMITER_",
        case_sensitive=False,
    )


class RedisSettings(BaseSettings):
    """Shared window store connection settings.

    Leaving ``url`` unset runs the limiter on the in-memory store only.
    """

    url: str | None = Field(
        None,
        description="Redis connection URL (e.g., redis://localhost:6379/0)",
    )
    password: str | None = Field(
        None,
        description="Redis password, if not embedded in the URL",
    )
    db: int = Field(
        0,
        description="Redis logical database index",
        ge=0,
    )
    key_prefix: str = Field(
        "ratelimit:",
        description="Prefix applied to every sorted-set key",
    )
    connect_timeout_seconds: float = Field(
        5.0,
        description="Timeout for establishing the connection and startup PING",
        gt=0,
    )
    operation_timeout_seconds: float = Field(
        0.25,
        description="Per-operation timeout before degrading to the fallback policy",
        gt=0,
    )
    connect_attempts: int = Field(
        3,
        description="Startup connection attempts before falling back to memory",
        ge=1,
    )
    backoff_base_seconds: float = Field(
        0.05,
        description="Base delay for exponential reconnect backoff",
        ge=0,
    )
    backoff_cap_seconds: float = Field(
        0.5,
        description="Upper bound for reconnect backoff delays",
        ge=0,
    )
    reconnect_interval_seconds: float = Field(
        0.0,
        description="Probe interval for recovering the shared store (0 disables)",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log destination: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    limiter: LimiterSettings = Field(default_factory=_build_limiter_settings)
    redis: RedisSettings = Field(default_factory=_build_redis_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
