"""Tests for Settings defaults, environment overrides and logging setup."""

import logging
from pathlib import Path

import pytest

from codejudge.config import LOCAL_SCRATCH_ROOT, PRODUCTION_SCRATCH_ROOT, Settings, configure_logging


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings()
        assert settings.max_execution_time_ms == 10000
        assert settings.max_memory_limit_kb == 262144
        assert settings.max_output_bytes == 1024 * 1024
        assert settings.max_concurrent_judges == 4
        assert settings.max_workspace_age_ms == 10 * 60 * 1000

    def test_scratch_root_by_environment(self) -> None:
        assert Settings(environment="development").workspace_root == LOCAL_SCRATCH_ROOT
        assert Settings(environment="Production").workspace_root == PRODUCTION_SCRATCH_ROOT

    def test_explicit_scratch_root_wins(self, tmp_path: Path) -> None:
        settings = Settings(environment="production", scratch_root=tmp_path)
        assert settings.workspace_root == tmp_path

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CODEJUDGE_MAX_CONCURRENT_JUDGES", "9")
        monkeypatch.setenv("CODEJUDGE_ENVIRONMENT", "production")
        settings = Settings()
        assert settings.max_concurrent_judges == 9
        assert settings.is_production


class TestConfigureLogging:
    def test_idempotent(self) -> None:
        configure_logging("debug")
        configure_logging("warning")
        logger = logging.getLogger("codejudge")
        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
