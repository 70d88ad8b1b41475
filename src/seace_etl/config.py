"""Model catalog, provider settings and runtime configuration."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass
class ModelConfig:
    """Configuration for an LLM model."""
    id: str
    name: str
    provider: str
    context_window: int
    cost_per_1k_input: float  # USD
    cost_per_1k_output: float  # USD
    supports_structured_output: bool = True
    notes: str = ""


# Provider constants
PROVIDER_GOOGLE = "google"

PROVIDERS = (PROVIDER_GOOGLE,)

# Default models per provider
DEFAULT_MODELS = {
    PROVIDER_GOOGLE: "gemini-2.5-flash",
}

# Gemini exposes an OpenAI-compatible surface
GOOGLE_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"

# Env vars that may hold a bootstrap credential for an empty pool
SYSTEM_KEY_ENV_VARS = ("GEMINI_API_KEY", "GOOGLE_API_KEY")

# Model catalog
MODELS = {
    "gemini-2.5-flash": ModelConfig(
        id="gemini-2.5-flash",
        name="Gemini 2.5 Flash",
        provider=PROVIDER_GOOGLE,
        context_window=1048576,
        cost_per_1k_input=0.0003,
        cost_per_1k_output=0.0025,
        notes="Default for categorization and location inference",
    ),
    "gemini-2.5-flash-lite": ModelConfig(
        id="gemini-2.5-flash-lite",
        name="Gemini 2.5 Flash Lite",
        provider=PROVIDER_GOOGLE,
        context_window=1048576,
        cost_per_1k_input=0.0001,
        cost_per_1k_output=0.0004,
        notes="Cheapest option, higher free-tier quota",
    ),
    "gemini-2.5-pro": ModelConfig(
        id="gemini-2.5-pro",
        name="Gemini 2.5 Pro",
        provider=PROVIDER_GOOGLE,
        context_window=1048576,
        cost_per_1k_input=0.00125,
        cost_per_1k_output=0.01,
    ),
    "gemini-2.0-flash": ModelConfig(
        id="gemini-2.0-flash",
        name="Gemini 2.0 Flash",
        provider=PROVIDER_GOOGLE,
        context_window=1048576,
        cost_per_1k_input=0.0001,
        cost_per_1k_output=0.0004,
    ),
}

TRUE_VALUES = {"1", "true", "yes", "on"}


def get_model_config(model_id: str) -> Optional[ModelConfig]:
    """Get configuration for a model by ID."""
    return MODELS.get(model_id)


def get_default_model(provider: str) -> str:
    """Get the default model for a provider."""
    return DEFAULT_MODELS.get(provider, DEFAULT_MODELS[PROVIDER_GOOGLE])


def list_models(provider: Optional[str] = None) -> list[ModelConfig]:
    """List available models, optionally filtered by provider."""
    if provider:
        return [m for m in MODELS.values() if m.provider == provider]
    return list(MODELS.values())


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in TRUE_VALUES


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return max(int(raw), minimum)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass
class Settings:
    """Runtime settings resolved from the environment (and `.env`)."""

    model: str = DEFAULT_MODELS[PROVIDER_GOOGLE]
    worker_pool_size: int = 4
    execute_async: bool = True
    max_failovers: int = 5
    max_transient_retries: int = 3
    retry_backoff_base: float = 0.5
    retry_backoff_max: float = 8.0
    quota_reset_hours: int = 24
    max_operation_history: int = 200
    max_operation_messages: int = 200
    state_store_backend: str = "json"
    state_store_path: Path = field(default_factory=lambda: Path("dist/state_store.json"))
    state_store_sqlite_path: Path = field(default_factory=lambda: Path("dist/state_store.db"))
    records_db_path: Path = field(default_factory=lambda: Path("dist/procesos.db"))
    seace_search_url: str = (
        "https://prodapp2.seace.gob.pe/seacebus-uiwd-pub/buscadorPublico/buscadorPublico.xhtml"
    )
    seace_timeout_seconds: int = 30
    export_dir: Optional[Path] = None
    reaper_enabled: bool = False
    reaper_interval: str = "300"
    reaper_max_idle_seconds: int = 1800
    encryption_key: str = ""
    request_log_json: bool = True
    request_log_level: str = "INFO"


def load_settings() -> Settings:
    """Build a `Settings` instance from environment variables."""
    export_dir = os.getenv("EXPORT_DIR", "").strip()
    return Settings(
        model=os.getenv("AI_MODEL", "").strip() or DEFAULT_MODELS[PROVIDER_GOOGLE],
        worker_pool_size=_env_int("WORKER_POOL_SIZE", 4, minimum=1),
        execute_async=_env_flag("EXECUTE_ASYNC", "1"),
        max_failovers=_env_int("MAX_FAILOVERS", 5, minimum=1),
        max_transient_retries=_env_int("MAX_TRANSIENT_RETRIES", 3),
        retry_backoff_base=_env_float("RETRY_BACKOFF_BASE", 0.5),
        retry_backoff_max=_env_float("RETRY_BACKOFF_MAX", 8.0),
        quota_reset_hours=_env_int("QUOTA_RESET_HOURS", 24, minimum=1),
        max_operation_history=_env_int("MAX_OPERATION_HISTORY", 200),
        max_operation_messages=_env_int("MAX_OPERATION_MESSAGES", 200, minimum=1),
        state_store_backend=os.getenv("STATE_STORE_BACKEND", "json").strip().lower(),
        state_store_path=Path(os.getenv("STATE_STORE_PATH", "dist/state_store.json")),
        state_store_sqlite_path=Path(os.getenv("STATE_STORE_SQLITE_PATH", "dist/state_store.db")),
        records_db_path=Path(os.getenv("RECORDS_DB_PATH", "dist/procesos.db")),
        seace_search_url=os.getenv("SEACE_SEARCH_URL", "").strip() or Settings.seace_search_url,
        seace_timeout_seconds=_env_int("SEACE_TIMEOUT_SEC", 30, minimum=1),
        export_dir=Path(export_dir) if export_dir else None,
        reaper_enabled=_env_flag("REAPER_ENABLED", "0"),
        reaper_interval=os.getenv("REAPER_INTERVAL", "300").strip(),
        reaper_max_idle_seconds=_env_int("REAPER_MAX_IDLE_SEC", 1800, minimum=1),
        encryption_key=os.getenv("CREDENTIAL_ENCRYPTION_KEY", "").strip(),
        request_log_json=_env_flag("REQUEST_LOG_JSON", "1"),
        request_log_level=os.getenv("REQUEST_LOG_LEVEL", "INFO").upper(),
    )
