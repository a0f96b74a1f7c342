import json
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tabpilot.constants import (
    CANCEL_POLL_INTERVAL,
    DEFAULT_MODEL,
    MAX_CONTEXT_TOKENS,
    MAX_STEPS,
    OLLAMA_BASE_URL,
)
from tabpilot.llm.models import get_models, load_custom_models
from tabpilot.logging import get_logger

TABPILOT_DIR = Path.home() / ".tabpilot"
SETTINGS_PATH = TABPILOT_DIR / "settings.json"

_logger = get_logger(__name__)


def load_user_settings() -> dict:
    if not SETTINGS_PATH.exists():
        return {}
    try:
        return json.loads(SETTINGS_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        _logger.warning("Failed to load user settings", exc_info=True)
        return {}


def save_user_settings(settings: dict) -> None:
    TABPILOT_DIR.mkdir(exist_ok=True)
    SETTINGS_PATH.write_text(json.dumps(settings, indent=2))


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TABPILOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        populate_by_name=True,
    )

    # API keys, read from the standard env vars via aliases
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    gemini_api_key: str | None = Field(default=None, alias="GEMINI_API_KEY")

    model: str = DEFAULT_MODEL
    ollama_base_url: str = OLLAMA_BASE_URL

    # Execution loop
    max_steps: int = MAX_STEPS
    context_budget: int = MAX_CONTEXT_TOKENS
    streaming: bool = True
    cancel_poll_interval: float = CANCEL_POLL_INTERVAL

    # Memory
    memory: bool = True

    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("model")
    @classmethod
    def _validate_model(cls, v: str) -> str:
        load_custom_models()
        valid = get_models()
        if v not in valid:
            raise ValueError(f"Unsupported model: {v}. Must be one of: {', '.join(valid)}")
        return v

    @field_validator("max_steps", "context_budget")
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be positive, got {v}")
        return v

    @field_validator("cancel_poll_interval")
    @classmethod
    def _validate_poll_interval(cls, v: float) -> float:
        if not 0 < v <= 5:
            raise ValueError(f"cancel_poll_interval must be in (0, 5] seconds, got {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def db_dir(self) -> Path:
        return TABPILOT_DIR

    @property
    def memory_db_path(self) -> Path:
        return self.db_dir / "memory.db"


PERSIST_KEYS = frozenset(
    {
        "model",
        "ollama_base_url",
        "max_steps",
        "context_budget",
        "streaming",
        "memory",
    }
)


def get_config() -> Config:
    settings = load_user_settings()

    # Build config: init args (settings.json) > env vars > defaults
    overrides = {k: settings[k] for k in PERSIST_KEYS if k in settings}
    return Config(**overrides)  # type: ignore - pydantic handles validation
