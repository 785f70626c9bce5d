"""Tests for central configuration settings."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from iacstudio.settings import (
    QueueSettings,
    Settings,
    TerraformSettings,
    get_settings,
)


class TestQueueSettings:
    def test_defaults(self):
        env = {k: v for k, v in os.environ.items() if k not in ("WORKER_CONCURRENCY", "TASK_MAX_RETRIES")}
        with patch.dict(os.environ, env, clear=True):
            settings = QueueSettings()
            assert settings.worker_concurrency == 10
            assert settings.task_max_retries == 3
            assert settings.celery_broker_url == "redis://localhost:6379/1"

    def test_env_override(self):
        with patch.dict(os.environ, {"WORKER_CONCURRENCY": "4", "CELERY_BROKER_URL": "redis://q:6379/0"}):
            settings = QueueSettings()
            assert settings.worker_concurrency == 4
            assert settings.celery_broker_url == "redis://q:6379/0"

    @pytest.mark.parametrize("value", ["0", "1001"])
    def test_concurrency_bounds(self, value):
        with patch.dict(os.environ, {"WORKER_CONCURRENCY": value}):
            with pytest.raises(ValidationError, match="WORKER_CONCURRENCY"):
                QueueSettings()


class TestTerraformSettings:
    def test_prefixed_env(self):
        with patch.dict(os.environ, {
            "TERRAFORM_WORKING_DIR": "/srv/iac",
            "TERRAFORM_BINARY": "tofu",
            "TERRAFORM_TIMEOUT_SECONDS": "600",
        }):
            settings = TerraformSettings()
            assert settings.working_dir == Path("/srv/iac")
            assert settings.binary == "tofu"
            assert settings.timeout_seconds == 600
            assert settings.task_time_limit == 900

    def test_timeout_must_be_positive(self):
        with patch.dict(os.environ, {"TERRAFORM_TIMEOUT_SECONDS": "0"}):
            with pytest.raises(ValidationError, match="TERRAFORM_TIMEOUT_SECONDS"):
                TerraformSettings()


class TestSettings:
    def test_nested_groups(self):
        settings = Settings()
        assert settings.database is not None
        assert settings.queue is not None
        assert settings.terraform is not None

    def test_log_level_normalized(self):
        with patch.dict(os.environ, {"LOG_LEVEL": "debug"}):
            assert Settings().log_level == "DEBUG"

    @pytest.mark.parametrize("key,value", [
        ("APP_ENV", "qa"),
        ("LOG_LEVEL", "chatty"),
        ("LOG_FORMAT", "xml"),
    ])
    def test_invalid_values_fail_fast(self, key, value):
        with patch.dict(os.environ, {key: value}):
            with pytest.raises(ValidationError, match=key):
                Settings()

    def test_get_settings_cached(self):
        assert get_settings() is get_settings()
        get_settings.cache_clear()
        with patch.dict(os.environ, {"LOG_FORMAT": "console"}):
            assert get_settings().log_format == "console"
