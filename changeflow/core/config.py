"""
Changeflow: Configuration Management

This module provides centralised configuration management for Changeflow.
It loads configuration from environment variables (optionally via a .env
file), with strongly typed access via Pydantic BaseSettings.

Key responsibilities:
- Load and validate configuration from environment variables
- Provide typed configuration objects for the audit database, the
  distributed lock and logging
- Expose a cached global configuration accessor for convenience

External dependencies:
- pydantic: Data validation and settings management
- pydantic-settings: Environment variable integration for settings
- python-dotenv: Optional .env loading for local development

Database tables accessed:
- None (configuration only)

Thread safety: Thread-safe (configuration is immutable after initial load)

Author: Changeflow Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# ============================================================================
# Data Models
# ============================================================================


class DatabaseConfig(BaseModel):
    """Database connection configuration.

    This structure describes the PostgreSQL database holding the audit
    trail, the pipeline lock rows and the legacy import markers.

    Attributes:
        host: Database host name or IP address.
        port: TCP port for the PostgreSQL instance.
        name: Database name.
        user: Database user for connections.
        password: Password for the database user.
        pool_size: Maximum number of connections in the pool.
        pool_timeout: Timeout (in seconds) when acquiring a connection.
    """

    host: str
    port: int
    name: str
    user: str
    password: str
    pool_size: int = 5
    pool_timeout: int = 30


class LockConfig(BaseModel):
    """Distributed lock configuration.

    Attributes:
        key: Logical lock key shared by every instance running the same
            pipeline against the same audit store.
        lease_seconds: Lifetime of a lease before it must be renewed.
        acquire_timeout_seconds: How long ``acquire`` keeps retrying while
            another instance holds the lease. ``0`` means fail fast.
        retry_interval_seconds: Sleep between acquisition attempts.
        renew_interval_seconds: Heartbeat interval of the lease keeper.
        service_identifier: Optional prefix for lease owner identifiers.
    """

    key: str = "changeflow-default"
    lease_seconds: float = 60.0
    acquire_timeout_seconds: float = 180.0
    retry_interval_seconds: float = 1.0
    renew_interval_seconds: float = 20.0
    service_identifier: Optional[str] = None


class ChangeflowConfig(BaseSettings):
    """Main Changeflow configuration loaded from environment variables.

    Environment variables use the following mapping by default:

    - AUDIT_DB_* for the audit database
    - LOCK_* for the distributed lock
    - AUDIT_WRITE_* for audit write retries
    - LOG_LEVEL / LOG_FILE for logging
    - ENVIRONMENT for environment name (development/staging/production)
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    # Audit DB
    audit_db_host: str = Field(default="localhost", alias="AUDIT_DB_HOST")
    audit_db_port: int = Field(default=5432, alias="AUDIT_DB_PORT")
    audit_db_name: str = Field(default="changeflow", alias="AUDIT_DB_NAME")
    audit_db_user: str = Field(default="changeflow", alias="AUDIT_DB_USER")
    audit_db_password: str = Field(default="", alias="AUDIT_DB_PASSWORD")
    audit_db_pool_size: int = Field(default=5, alias="AUDIT_DB_POOL_SIZE")

    # Lock
    lock_key: str = Field(default="changeflow-default", alias="LOCK_KEY")
    lock_lease_seconds: float = Field(default=60.0, alias="LOCK_LEASE_SECONDS")
    lock_acquire_timeout_seconds: float = Field(
        default=180.0, alias="LOCK_ACQUIRE_TIMEOUT_SECONDS"
    )
    lock_retry_interval_seconds: float = Field(
        default=1.0, alias="LOCK_RETRY_INTERVAL_SECONDS"
    )
    lock_renew_interval_seconds: Optional[float] = Field(
        default=None, alias="LOCK_RENEW_INTERVAL_SECONDS"
    )
    service_identifier: Optional[str] = Field(default=None, alias="SERVICE_IDENTIFIER")

    # Audit write retries
    audit_write_max_attempts: int = Field(default=3, alias="AUDIT_WRITE_MAX_ATTEMPTS")
    audit_write_backoff_seconds: float = Field(
        default=0.5, alias="AUDIT_WRITE_BACKOFF_SECONDS"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: str = Field(default="changeflow.log", alias="LOG_FILE")

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    @property
    def audit_db(self) -> DatabaseConfig:
        """Return database configuration for the audit DB."""

        return DatabaseConfig(
            host=self.audit_db_host,
            port=self.audit_db_port,
            name=self.audit_db_name,
            user=self.audit_db_user,
            password=self.audit_db_password,
            pool_size=self.audit_db_pool_size,
        )

    @property
    def lock(self) -> LockConfig:
        """Return distributed lock configuration.

        When ``LOCK_RENEW_INTERVAL_SECONDS`` is not set the heartbeat runs
        three times per lease so that a single missed renewal does not
        lose the lock.
        """

        renew_interval = self.lock_renew_interval_seconds
        if renew_interval is None:
            renew_interval = self.lock_lease_seconds / 3.0

        return LockConfig(
            key=self.lock_key,
            lease_seconds=self.lock_lease_seconds,
            acquire_timeout_seconds=self.lock_acquire_timeout_seconds,
            retry_interval_seconds=self.lock_retry_interval_seconds,
            renew_interval_seconds=renew_interval,
            service_identifier=self.service_identifier,
        )


# ============================================================================
# Public API
# ============================================================================


def load_config(env_file: Optional[Path] = None) -> ChangeflowConfig:
    """Load Changeflow configuration.

    For local development this function will attempt to load a `.env` file
    from the current working directory if one is present. Environment
    variables always take precedence over values from `.env`.

    Args:
        env_file: Optional explicit path to a `.env` file. If omitted,
            the function will look for `.env` in the current working
            directory.

    Returns:
        A fully populated :class:`ChangeflowConfig` instance.

    Raises:
        FileNotFoundError: If an explicit ``env_file`` is provided but
            does not exist.
    """

    if env_file is not None:
        if not env_file.exists():
            msg = f"Environment file not found: {env_file}"
            raise FileNotFoundError(msg)
        # An explicit env_file wins over values already in the environment
        # so that tests and local runs can reliably control configuration.
        load_dotenv(env_file, override=True)
    else:
        default_env = Path(".env")
        if default_env.exists():
            load_dotenv(default_env)

    return ChangeflowConfig()  # type: ignore[call-arg]


_global_config: Optional[ChangeflowConfig] = None


def get_config() -> ChangeflowConfig:
    """Return the global Changeflow configuration singleton.

    The configuration is loaded on first access (lazy loading) and cached
    for subsequent calls. Library code that runs pipelines receives its
    collaborators explicitly; this accessor is meant for composition roots
    such as the CLI scripts.

    Returns:
        A cached :class:`ChangeflowConfig` instance.
    """

    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config
