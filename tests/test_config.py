"""Tests for configuration module in seace_etl.config."""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from seace_etl.config import (
    DEFAULT_MODELS,
    MODELS,
    PROVIDER_GOOGLE,
    ModelConfig,
    Settings,
    get_default_model,
    get_model_config,
    list_models,
    load_settings,
)


class TestModelCatalog:
    """Tests for the model catalog helpers."""

    def test_default_model_is_in_catalog(self):
        """The default model must have a catalog entry."""
        assert DEFAULT_MODELS[PROVIDER_GOOGLE] in MODELS

    def test_get_model_config(self):
        config = get_model_config("gemini-2.5-flash")
        assert isinstance(config, ModelConfig)
        assert config.provider == PROVIDER_GOOGLE
        assert get_model_config("nonexistent-model") is None

    def test_get_default_model_falls_back_to_google(self):
        assert get_default_model(PROVIDER_GOOGLE) == "gemini-2.5-flash"
        assert get_default_model("unknown") == "gemini-2.5-flash"

    def test_list_models_filters_by_provider(self):
        assert len(list_models()) == len(MODELS)
        assert all(m.provider == PROVIDER_GOOGLE for m in list_models(PROVIDER_GOOGLE))
        assert list_models("openai") == []


ENV_VARS = (
    "AI_MODEL", "WORKER_POOL_SIZE", "EXECUTE_ASYNC", "MAX_FAILOVERS", "MAX_TRANSIENT_RETRIES",
    "STATE_STORE_BACKEND", "RECORDS_DB_PATH", "EXPORT_DIR", "REAPER_ENABLED", "REAPER_INTERVAL",
    "CREDENTIAL_ENCRYPTION_KEY", "REQUEST_LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestLoadSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self, clean_env):
        settings = load_settings()
        assert settings.model == "gemini-2.5-flash"
        assert settings.execute_async is True
        assert settings.max_failovers == 5
        assert settings.state_store_backend == "json"
        assert settings.export_dir is None
        assert settings.reaper_enabled is False

    def test_overrides(self, clean_env, tmp_path):
        clean_env.setenv("AI_MODEL", "gemini-2.5-pro")
        clean_env.setenv("WORKER_POOL_SIZE", "8")
        clean_env.setenv("EXECUTE_ASYNC", "false")
        clean_env.setenv("STATE_STORE_BACKEND", "SQLite")
        clean_env.setenv("EXPORT_DIR", str(tmp_path))
        clean_env.setenv("REAPER_ENABLED", "yes")
        clean_env.setenv("REQUEST_LOG_LEVEL", "debug")

        settings = load_settings()
        assert settings.model == "gemini-2.5-pro"
        assert settings.worker_pool_size == 8
        assert settings.execute_async is False
        assert settings.state_store_backend == "sqlite"
        assert settings.export_dir == tmp_path
        assert settings.reaper_enabled is True
        assert settings.request_log_level == "DEBUG"

    def test_bad_numbers_fall_back_and_respect_minimums(self, clean_env):
        clean_env.setenv("MAX_FAILOVERS", "lots")
        clean_env.setenv("WORKER_POOL_SIZE", "0")
        settings = load_settings()
        assert settings.max_failovers == 5
        assert settings.worker_pool_size == 1

    def test_settings_dataclass_defaults_match_loader(self, clean_env):
        assert Settings().max_transient_retries == load_settings().max_transient_retries
