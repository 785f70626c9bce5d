"""
Central configuration using Pydantic BaseSettings.

Validates all env vars at startup (fail-fast). Values come from the
environment or a local .env file.

Usage:
    from iacstudio.settings import get_settings

    settings = get_settings()
    print(settings.terraform.working_dir)

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

APP_ENVIRONMENTS = ("development", "staging", "production", "test")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("json", "console")


# =============================================================================
# Nested Settings Groups
# =============================================================================


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    database_url: Optional[str] = None  # PostgreSQL URL (optional)
    database_path: Path = Path("data/iacstudio.db")


class QueueSettings(BaseSettings):
    """Celery broker and worker pool configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"
    worker_concurrency: int = 10
    task_max_retries: int = 3
    task_retry_delay: int = 30  # seconds

    @field_validator("worker_concurrency")
    @classmethod
    def _check_concurrency(cls, value: int) -> int:
        if not 1 <= value <= 1000:
            raise ValueError("WORKER_CONCURRENCY must be between 1 and 1000")
        return value


class TerraformSettings(BaseSettings):
    """Terraform executor configuration."""

    model_config = {"env_prefix": "TERRAFORM_", "extra": "ignore"}

    working_dir: Path = Path(tempfile.gettempdir())
    binary: str = "terraform"
    timeout_seconds: int = 3600

    @field_validator("timeout_seconds")
    @classmethod
    def _check_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TERRAFORM_TIMEOUT_SECONDS must be positive")
        return value

    @property
    def task_time_limit(self) -> int:
        """Hard Celery limit: the executor timeout plus headroom for init/cleanup."""
        return self.timeout_seconds + 300


# =============================================================================
# Root Settings
# =============================================================================


class Settings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    app_env: str = "development"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    # Nested groups (initialized separately to support env_prefix)
    database: DatabaseSettings = None  # type: ignore[assignment]
    queue: QueueSettings = None  # type: ignore[assignment]
    terraform: TerraformSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("database") is None:
            values["database"] = DatabaseSettings()
        if values.get("queue") is None:
            values["queue"] = QueueSettings()
        if values.get("terraform") is None:
            values["terraform"] = TerraformSettings()
        return values

    @field_validator("app_env")
    @classmethod
    def _check_app_env(cls, value: str) -> str:
        if value not in APP_ENVIRONMENTS:
            raise ValueError(f"APP_ENV must be one of {', '.join(APP_ENVIRONMENTS)}")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        return value

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        if value not in LOG_FORMATS:
            raise ValueError(f"LOG_FORMAT must be one of {', '.join(LOG_FORMATS)}")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return Settings()
