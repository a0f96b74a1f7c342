import asyncio
import hashlib
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx
from google import genai
from google.genai import errors, types

from tabpilot.constants import GEMINI_CACHE_MIN_CHARS, GEMINI_CACHE_TTL
from tabpilot.llm.base import TOOL_PARAMETERS, ProviderAdapter
from tabpilot.llm.models import Model
from tabpilot.llm.types import ReasoningEvent, StreamEvent, TextEvent, ToolSpec, UsageEvent
from tabpilot.llm.utils import blocks_to_text, render_function_call
from tabpilot.logging import get_logger
from tabpilot.usage import Usage

_logger = get_logger(__name__)


@dataclass(frozen=True)
class CachedPrompt:
    name: str
    digest: str
    expires_at: float

    @property
    def valid(self) -> bool:
        return time.monotonic() < self.expires_at


class GeminiProvider(ProviderAdapter):
    name = "google"
    transport_errors = (errors.APIError, httpx.HTTPError)

    def __init__(self, model: Model, api_key: str | None = None):
        super().__init__(model)
        self._client = genai.Client(api_key=api_key)
        self._caches: dict[str, CachedPrompt] = {}
        self._pending: set[str] = set()
        self._background: set[asyncio.Task] = set()

    async def _stream(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[ToolSpec] | None,
    ) -> AsyncIterator[StreamEvent]:
        config = self._build_config(system_prompt, tools)
        stream = await self._client.aio.models.generate_content_stream(
            model=self.model.id,
            contents=self._convert_messages(messages),
            config=config,
        )

        emitted_text = False
        async for chunk in stream:
            for event in self._parse_parts(self._parts_of(chunk), emitted_text):
                if isinstance(event, TextEvent):
                    emitted_text = True
                yield event
            if chunk.usage_metadata is not None:
                yield UsageEvent(self._parse_usage(chunk.usage_metadata))

    async def _complete(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[ToolSpec] | None,
    ) -> list[StreamEvent]:
        config = self._build_config(system_prompt, tools)
        response = await self._client.aio.models.generate_content(
            model=self.model.id,
            contents=self._convert_messages(messages),
            config=config,
        )

        events = self._parse_parts(self._parts_of(response), emitted_text=False)
        text = "".join(e.text for e in events if isinstance(e, TextEvent))
        events = [e for e in events if not isinstance(e, TextEvent)]
        if text:
            events.append(TextEvent(text))
        if response.usage_metadata is not None:
            events.append(UsageEvent(self._parse_usage(response.usage_metadata)))
        return events

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # --- Prompt cache ---

    def _digest(self, system_prompt: str, tools: list[ToolSpec] | None) -> str:
        names = ",".join(t.name for t in tools or [])
        return hashlib.sha256(f"{names}\n{system_prompt}".encode()).hexdigest()

    def cached_prompt(self, system_prompt: str, tools: list[ToolSpec] | None) -> str | None:
        """Return a live cache name for this prompt, scheduling creation on a miss."""
        if len(system_prompt) < GEMINI_CACHE_MIN_CHARS:
            return None

        digest = self._digest(system_prompt, tools)
        entry = self._caches.get(self.model.id)
        if entry is not None:
            if entry.valid and entry.digest == digest:
                return entry.name
            del self._caches[self.model.id]

        if self.model.id not in self._pending:
            self._pending.add(self.model.id)
            task = asyncio.create_task(self._create_cache(system_prompt, tools, digest))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return None

    async def _create_cache(self, system_prompt: str, tools: list[ToolSpec] | None, digest: str) -> None:
        try:
            cache = await self._client.aio.caches.create(
                model=self.model.id,
                config=types.CreateCachedContentConfig(
                    system_instruction=system_prompt,
                    tools=self._convert_tools(tools) if tools else None,
                    ttl=f"{GEMINI_CACHE_TTL}s",
                ),
            )
        except (errors.APIError, httpx.HTTPError):
            _logger.warning("Gemini prompt cache creation failed (model=%s)", self.model.id, exc_info=True)
            return
        finally:
            self._pending.discard(self.model.id)

        if not cache.name:
            _logger.warning("Gemini prompt cache created without a name (model=%s)", self.model.id)
            return
        self._caches[self.model.id] = CachedPrompt(
            name=cache.name,
            digest=digest,
            expires_at=time.monotonic() + GEMINI_CACHE_TTL,
        )
        _logger.info("Created Gemini prompt cache %s (model=%s)", cache.name, self.model.id)

    # --- Request building ---

    def _build_config(self, system_prompt: str, tools: list[ToolSpec] | None) -> types.GenerateContentConfig:
        config_kwargs: dict = {"max_output_tokens": self.model.max_output_tokens}

        # A cached prompt already carries the system instruction and tools.
        if cache_name := self.cached_prompt(system_prompt, tools):
            return types.GenerateContentConfig(cached_content=cache_name, **config_kwargs)

        if system_prompt:
            config_kwargs["system_instruction"] = system_prompt
        if tools:
            config_kwargs["tools"] = self._convert_tools(tools)
            config_kwargs["tool_config"] = types.ToolConfig(
                function_calling_config=types.FunctionCallingConfig(mode="AUTO")
            )
        return types.GenerateContentConfig(**config_kwargs)

    def _convert_tools(self, tools: list[ToolSpec]) -> list[types.Tool]:
        declarations = [
            types.FunctionDeclaration(name=tool.name, description=tool.description, parameters=TOOL_PARAMETERS)
            for tool in tools
        ]
        return [types.Tool(function_declarations=declarations)]

    # --- Message conversion ---

    def _convert_messages(self, messages: list[dict]) -> list[types.Content]:
        return [
            types.Content(
                role="model" if msg["role"] == "assistant" else "user",
                parts=[types.Part(text=blocks_to_text(msg["content"]))],
            )
            for msg in messages
        ]

    # --- Response parsing ---

    def _parts_of(self, response) -> list:
        if not response.candidates:
            return []
        content = response.candidates[0].content
        return (content.parts or []) if content else []

    def _parse_parts(self, parts, emitted_text: bool) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for part in parts:
            if part.function_call is not None:
                fc = part.function_call
                rendered = render_function_call(fc.name or "", dict(fc.args) if fc.args else {})
                events.append(TextEvent(f"\n{rendered}" if emitted_text else rendered))
                # One call per turn; parallel calls after the first are dropped.
                break
            elif part.text:
                if part.thought:
                    events.append(ReasoningEvent(part.text))
                else:
                    events.append(TextEvent(part.text))
                    emitted_text = True
        return events

    def _parse_usage(self, usage_meta) -> Usage:
        total_prompt = usage_meta.prompt_token_count or 0
        cache_read = usage_meta.cached_content_token_count or 0
        return Usage(
            prompt_tokens=total_prompt - cache_read,
            completion_tokens=usage_meta.candidates_token_count or 0,
            cache_read_tokens=cache_read,
            cache_write_tokens=0,
        )
