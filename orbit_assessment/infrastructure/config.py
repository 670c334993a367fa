"""
Centralized configuration management for the ORBIT assessment engine.

Provides environment-specific configuration with validation, type safety,
and settings management using Pydantic.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class DatabaseConfig(BaseSettings):
    """
    Database configuration settings.

    Handles both SQLite and MySQL configurations with validation
    and connection URL generation.

    Example:
        >>> db_config = DatabaseConfig(backend="sqlite", sqlite_path="./test.db")
        >>> print(db_config.get_connection_url())
        >>> # sqlite:///./test.db
    """

    backend: Literal["sqlite", "mysql"] = Field("sqlite", description="Database backend type")

    # SQLite settings
    sqlite_path: str | None = Field("./orbit.db", description="SQLite database file path")

    # MySQL settings
    mysql_host: str | None = Field("localhost", description="MySQL host")
    mysql_port: int | None = Field(3306, ge=1, le=65535, description="MySQL port")
    mysql_user: str | None = Field("root", description="MySQL username")
    mysql_password: str | None = Field("", description="MySQL password")
    mysql_database: str | None = Field("orbit", description="MySQL database name")
    mysql_charset: str = Field("utf8mb4", description="MySQL character set")

    # Connection settings
    pool_pre_ping: bool = Field(True, description="Enable connection pool pre-ping")
    pool_recycle: int = Field(3600, ge=60, description="Connection pool recycle time (seconds)")
    echo: bool = Field(False, description="Enable SQL query logging")

    model_config = {"env_prefix": "DB_", "case_sensitive": False}

    @field_validator("sqlite_path")
    def validate_sqlite_path(cls, v):
        """Validate SQLite path and ensure directory exists."""
        if v and v != ":memory:":
            path = Path(v)
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.suffix:
                v = str(path.with_suffix(".db"))
        return v

    @model_validator(mode="after")
    def validate_mysql_config(self):
        """Validate MySQL configuration completeness."""
        if self.backend == "mysql":
            missing = []
            if not self.mysql_host:
                missing.append("mysql_host")
            if not self.mysql_user:
                missing.append("mysql_user")
            if not self.mysql_database:
                missing.append("mysql_database")
            if missing:
                raise ValueError(f"MySQL backend requires: {', '.join(missing)}")
        return self

    def get_connection_url(self) -> str:
        """
        Generate database connection URL.

        Raises:
            ValueError: If backend is unsupported
        """
        if self.backend == "sqlite":
            return f"sqlite:///{self.sqlite_path}"
        elif self.backend == "mysql":
            password_part = f":{self.mysql_password}" if self.mysql_password else ""
            return (
                f"mysql+pymysql://{self.mysql_user}{password_part}@{self.mysql_host}:"
                f"{self.mysql_port}/{self.mysql_database}?charset={self.mysql_charset}"
            )
        else:
            raise ValueError(f"Unsupported database backend: {self.backend}")

    def get_engine_options(self) -> dict[str, Any]:
        """Get SQLAlchemy engine options."""
        return {
            "echo": self.echo,
            "future": True,
            "pool_pre_ping": self.pool_pre_ping,
            "pool_recycle": self.pool_recycle,
        }


class LoggingConfig(BaseSettings):
    """
    Logging configuration settings.

    Example:
        >>> log_config = LoggingConfig(level="DEBUG", file_path="./logs/orbit.log")
        >>> print(log_config.get_file_handler_config())
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        "INFO", description="Minimum logging level"
    )
    file_path: str | None = Field("./logs/orbit.log", description="Log file path")
    max_bytes: int = Field(10 * 1024 * 1024, ge=1024, description="Max log file size in bytes")
    backup_count: int = Field(5, ge=1, description="Number of backup log files")
    structured: bool = Field(True, description="Use structured JSON logging")
    console_enabled: bool = Field(True, description="Enable console output")

    model_config = {"env_prefix": "LOG_", "case_sensitive": False}

    def get_file_handler_config(self) -> dict[str, Any] | None:
        """Get file handler configuration if file logging is enabled."""
        if not self.file_path:
            return None

        return {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": self.file_path,
            "maxBytes": self.max_bytes,
            "backupCount": self.backup_count,
            "encoding": "utf-8",
        }


class ImportConfig(BaseSettings):
    """
    Bundle import/export settings.

    Example:
        >>> import_config = ImportConfig(max_workers=4)
        >>> import_config.is_supported_version("1.0")
        True
    """

    supported_versions: list[str] = Field(["1.0"], description="Accepted bundle versions")
    export_version: str = Field("1.0", description="Version written into exported bundles")
    max_workers: int = Field(1, ge=1, le=32, description="Areas merged concurrently")
    max_bundle_size_mb: int = Field(50, ge=1, le=1024, description="Largest bundle accepted (MB)")
    compress_exports: bool = Field(True, description="Write .json.gz bundles by default")
    export_directory: str = Field("./exports", description="Default export directory")

    model_config = {"env_prefix": "IMPORT_", "case_sensitive": False}

    @model_validator(mode="after")
    def export_version_is_supported(self):
        """The version we write must be one we can read back."""
        if self.export_version not in self.supported_versions:
            raise ValueError(
                f"Export version {self.export_version} is not in supported versions "
                f"{self.supported_versions}"
            )
        return self

    def is_supported_version(self, version: str) -> bool:
        return version in self.supported_versions


class ApplicationConfig(BaseSettings):
    """
    Main application configuration.

    Example:
        >>> config = get_settings()
        >>> print(config.app.environment)
    """

    environment: Literal["development", "testing", "production"] = Field(
        "development", description="Application environment"
    )
    debug: bool = Field(False, description="Enable debug mode")
    version: str = Field("1.0.0", description="Application version")

    # Feature flags
    enable_data_export: bool = Field(True, description="Enable bundle export functionality")
    enable_bundle_import: bool = Field(True, description="Enable bundle import functionality")

    model_config = {"env_prefix": "APP_", "case_sensitive": False}

    @model_validator(mode="after")
    def debug_implies_development(self):
        """Ensure debug mode is only enabled outside production."""
        if self.debug and self.environment == "production":
            raise ValueError("Debug mode cannot be enabled in production")
        return self


class Settings:
    """
    Complete application settings container.

    Provides structured access to all configuration sections
    with lazy loading and caching.

    Example:
        >>> settings = get_settings()
        >>> print(settings.database.get_connection_url())
        >>> print(settings.imports.max_workers)
    """

    def __init__(self):
        self._app: ApplicationConfig | None = None
        self._database: DatabaseConfig | None = None
        self._logging: LoggingConfig | None = None
        self._imports: ImportConfig | None = None

    @property
    def app(self) -> ApplicationConfig:
        """Get application configuration."""
        if self._app is None:
            self._app = ApplicationConfig()
        return self._app

    @property
    def database(self) -> DatabaseConfig:
        """Get database configuration."""
        if self._database is None:
            self._database = DatabaseConfig()
        return self._database

    @property
    def logging(self) -> LoggingConfig:
        """Get logging configuration."""
        if self._logging is None:
            level = "DEBUG" if self.app.debug else "INFO"
            if self.app.environment == "production":
                level = "WARNING"
            self._logging = LoggingConfig(level=level)
        return self._logging

    @property
    def imports(self) -> ImportConfig:
        """Get bundle import/export configuration."""
        if self._imports is None:
            self._imports = ImportConfig()
        return self._imports

    def get_environment_info(self) -> dict[str, Any]:
        """Get summary of current environment configuration."""
        return {
            "environment": self.app.environment,
            "version": self.app.version,
            "debug": self.app.debug,
            "database_backend": self.database.backend,
            "logging_level": self.logging.level,
            "features": {
                "data_export": self.app.enable_data_export,
                "bundle_import": self.app.enable_bundle_import,
            },
            "imports": {
                "supported_versions": list(self.imports.supported_versions),
                "max_workers": self.imports.max_workers,
            },
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get application settings instance (cached).

    Returns:
        Settings instance with all configuration loaded
    """
    return Settings()


# Settings attribute -> the section class whose env_prefix its keys receive
SECTION_CONFIGS: dict[str, type[BaseSettings]] = {
    "app": ApplicationConfig,
    "database": DatabaseConfig,
    "logging": LoggingConfig,
    "imports": ImportConfig,
}


def load_settings_from_file(file_path: str) -> Settings:
    """
    Load settings from a JSON configuration file.

    Top-level sections are named after the ``Settings`` attributes
    (``app``, ``database``, ``logging``, ``imports``); each key is exported
    under that section's env prefix, so ``{"imports": {"max_workers": 4}}``
    sets ``IMPORT_MAX_WORKERS``.

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        ValueError: If the file format is unsupported or a section is unknown

    Example:
        >>> settings = load_settings_from_file("config/production.json")
    """
    config_path = Path(file_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    if config_path.suffix.lower() == ".json":
        with open(config_path) as f:
            config_data = json.load(f)
    else:
        raise ValueError(f"Unsupported configuration file format: {config_path.suffix}")

    for section, values in config_data.items():
        config_class = SECTION_CONFIGS.get(section)
        if config_class is None or not isinstance(values, dict):
            raise ValueError(
                f"Unknown configuration section '{section}'; expected one of "
                f"{', '.join(SECTION_CONFIGS)}"
            )
        prefix = config_class.model_config["env_prefix"]
        for key, value in values.items():
            env_key = f"{prefix}{key.upper()}"
            os.environ[env_key] = value if isinstance(value, str) else json.dumps(value)

    get_settings.cache_clear()
    return get_settings()


def override_settings(**kwargs) -> Settings:
    """
    Override specific settings for testing or development.

    Keys are environment variable names without case, e.g. ``app_environment``
    or ``import_max_workers``.

    Example:
        >>> settings = override_settings(app_environment="testing", db_sqlite_path=":memory:")
    """
    for key, value in kwargs.items():
        os.environ[key.upper()] = value if isinstance(value, str) else json.dumps(value)

    get_settings.cache_clear()
    return get_settings()


def reset_settings() -> None:
    """Reset settings cache to reload from environment."""
    get_settings.cache_clear()
