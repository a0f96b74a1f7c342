import os

from tabpilot.llm.anthropic import AnthropicProvider
from tabpilot.llm.base import ProviderAdapter
from tabpilot.llm.gemini import GeminiProvider
from tabpilot.llm.models import Provider, get_model, load_custom_models
from tabpilot.llm.openai import OpenAIProvider


class ProviderRouter:
    """Builds one adapter per model and hands it out to every session using it."""

    def __init__(self, config):
        load_custom_models()
        self._config = config
        self._adapters: dict[str, ProviderAdapter] = {}

    def _api_key(self, provider: Provider, api_key_env: str | None) -> str | None:
        match provider:
            case Provider.ANTHROPIC:
                return self._config.anthropic_api_key
            case Provider.OPENAI:
                return self._config.openai_api_key
            case Provider.GOOGLE:
                return self._config.gemini_api_key
            case Provider.OLLAMA:
                # The OpenAI SDK insists on a key; Ollama ignores it.
                return "ollama"
            case Provider.CUSTOM:
                return os.environ.get(api_key_env) if api_key_env else None

    def get(self, model_id: str) -> ProviderAdapter:
        if model_id not in self._adapters:
            model = get_model(model_id)
            key = self._api_key(model.provider, model.api_key_env)
            match model.provider:
                case Provider.ANTHROPIC:
                    adapter: ProviderAdapter = AnthropicProvider(model, api_key=key)
                case Provider.OPENAI:
                    adapter = OpenAIProvider(model, api_key=key)
                case Provider.GOOGLE:
                    adapter = GeminiProvider(model, api_key=key)
                case Provider.OLLAMA:
                    base_url = model.base_url or self._config.ollama_base_url
                    adapter = OpenAIProvider(model, api_key=key, base_url=base_url, native_tools=False)
                case Provider.CUSTOM:
                    adapter = OpenAIProvider(model, api_key=key, base_url=model.base_url)
                case _:
                    raise ValueError(f"Unknown provider: {model.provider}")
            self._adapters[model_id] = adapter
        return self._adapters[model_id]

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()
