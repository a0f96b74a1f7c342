import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from tabpilot.logging import get_logger
from tabpilot.usage import Pricing

_logger = get_logger(__name__)

MODELS_PATH = Path.home() / ".tabpilot" / "models.json"


class Provider(Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    OLLAMA = "ollama"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Model:
    id: str
    provider: Provider
    max_context_tokens: int
    max_output_tokens: int = 8192
    price_in: float = 0
    price_out: float = 0
    price_cache_read: float = 0
    price_cache_write: float = 0
    base_url: str | None = None
    api_key_env: str | None = None

    @property
    def pricing(self) -> Pricing:
        return Pricing(self.price_in, self.price_out, self.price_cache_read, self.price_cache_write)


def _claude(model_id: str, price_in: float, price_out: float, max_output: int = 8192) -> Model:
    # Cache reads bill at a tenth of input, writes at 1.25x.
    return Model(
        model_id,
        Provider.ANTHROPIC,
        200_000,
        max_output,
        price_in,
        price_out,
        price_cache_read=price_in / 10,
        price_cache_write=price_in * 1.25,
    )


# Prices are USD per million tokens.
DEFAULTS = [
    _claude("claude-opus-4-6", 5, 25, max_output=16384),
    _claude("claude-sonnet-4-6", 3, 15),
    _claude("claude-haiku-4-5", 1, 5),
    Model("gpt-5.2", Provider.OPENAI, 128_000, 16384, price_in=2, price_out=8),
    Model("gpt-4.1-mini", Provider.OPENAI, 128_000, 16384, price_in=0.40, price_out=1.60),
    Model("gemini-3-pro-preview", Provider.GOOGLE, 128_000, 65536, price_in=1.25, price_out=10),
    Model("gemini-3-flash-preview", Provider.GOOGLE, 128_000, 65536, price_in=0.15, price_out=0.60),
    Model("llama3.1", Provider.OLLAMA, 32_000, 4096),
    Model("qwen2.5", Provider.OLLAMA, 32_000, 4096),
]


class CustomModelEntry(BaseModel):
    """One entry of ``models.json``: an OpenAI-compatible endpoint."""

    base_url: str
    context_window: int = Field(gt=0)
    max_output_tokens: int = Field(default=8192, gt=0)
    price_in: float = 0
    price_out: float = 0
    api_key_env: str | None = None

    def to_model(self, model_id: str) -> Model:
        return Model(
            model_id,
            Provider.CUSTOM,
            self.context_window,
            self.max_output_tokens,
            self.price_in,
            self.price_out,
            base_url=self.base_url,
            api_key_env=self.api_key_env,
        )


_models: dict[str, Model] = {m.id: m for m in DEFAULTS}
_custom_loaded = False


def load_custom_models(path: Path = MODELS_PATH) -> None:
    """Register the endpoints declared in ``~/.tabpilot/models.json`` once per process.

    The file maps model ids to entries; invalid entries are skipped with a
    warning so one typo does not hide the rest.
    """
    global _custom_loaded
    if _custom_loaded:
        return
    _custom_loaded = True

    if not path.exists():
        return

    try:
        raw = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError):
        _logger.warning("Failed to read %s", path, exc_info=True)
        return

    if not isinstance(raw, dict):
        _logger.warning("%s: expected a JSON object, got %s", path, type(raw).__name__)
        return

    for model_id, entry in raw.items():
        try:
            model = CustomModelEntry.model_validate(entry).to_model(model_id)
        except ValidationError as e:
            _logger.warning("Skipping custom model %s: %s", model_id, e.errors(include_url=False))
            continue
        _models[model_id] = model
        _logger.info("Registered custom model %s (base_url=%s)", model_id, model.base_url)


def get_model(model_id: str) -> Model:
    try:
        return _models[model_id]
    except KeyError:
        raise ValueError(f"Unknown model: {model_id}. Available: {', '.join(_models)}") from None


def get_models() -> dict[str, Model]:
    return _models
