from collections.abc import AsyncIterator

import httpx
import openai

from tabpilot.llm.base import TOOL_PARAMETERS, ProviderAdapter
from tabpilot.llm.models import Model
from tabpilot.llm.types import ReasoningEvent, StreamEvent, TextEvent, ToolSpec, UsageEvent
from tabpilot.llm.utils import blocks_to_text, render_function_call
from tabpilot.usage import Usage


class OpenAIProvider(ProviderAdapter):
    """Chat-completions adapter for OpenAI and any OpenAI-compatible endpoint.

    Native function calls are accumulated from their argument deltas and
    rendered into the textual tool-call grammar once the call is complete.
    """

    name = "openai"
    transport_errors = (openai.APIError, httpx.HTTPError)

    def __init__(
        self,
        model: Model,
        api_key: str | None = None,
        base_url: str | None = None,
        native_tools: bool = True,
    ):
        super().__init__(model)
        self.native_tools = native_tools
        if base_url is not None:
            self.name = model.provider.value
        self._client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def _stream(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[ToolSpec] | None,
    ) -> AsyncIterator[StreamEvent]:
        request = self._build_request(system_prompt, messages, tools)
        stream = await self._client.chat.completions.create(
            **request,
            stream=True,
            stream_options={"include_usage": True},
        )

        calls: dict[int, dict] = {}
        emitted_text = False
        async for chunk in stream:
            if chunk.usage is not None:
                yield UsageEvent(self._parse_usage(chunk.usage))
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            delta = choice.delta
            if reasoning := getattr(delta, "reasoning_content", None):
                yield ReasoningEvent(reasoning)
            if delta.content:
                emitted_text = True
                yield TextEvent(delta.content)
            for tc in delta.tool_calls or []:
                call = calls.setdefault(tc.index, {"name": "", "arguments": ""})
                if tc.function is None:
                    continue
                if tc.function.name:
                    call["name"] += tc.function.name
                if tc.function.arguments:
                    call["arguments"] += tc.function.arguments

            if choice.finish_reason and calls:
                yield TextEvent(self._render_first_call(calls, emitted_text))
                calls.clear()

        if calls:
            yield TextEvent(self._render_first_call(calls, emitted_text))

    async def _complete(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[ToolSpec] | None,
    ) -> list[StreamEvent]:
        request = self._build_request(system_prompt, messages, tools)
        response = await self._client.chat.completions.create(**request)
        return self._parse_response(response)

    async def close(self) -> None:
        await self._client.close()

    # --- Request building ---

    def _build_request(self, system_prompt: str, messages: list[dict], tools: list[ToolSpec] | None) -> dict:
        api_messages = [{"role": "system", "content": system_prompt}] if system_prompt else []
        api_messages.extend({"role": m["role"], "content": blocks_to_text(m["content"])} for m in messages)

        request: dict = {
            "model": self.model.id,
            "messages": api_messages,
            "max_tokens": self.model.max_output_tokens,
        }
        if tools:
            request["tools"] = self._convert_tools(tools)
            request["tool_choice"] = "auto"
        return request

    def _convert_tools(self, tools: list[ToolSpec]) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": TOOL_PARAMETERS,
                },
            }
            for tool in tools
        ]

    # --- Response parsing ---

    def _render_first_call(self, calls: dict[int, dict], after_text: bool) -> str:
        # One tool call per turn; any further parallel calls are dropped.
        call = calls[min(calls)]
        rendered = render_function_call(call["name"], call["arguments"])
        return f"\n{rendered}" if after_text else rendered

    def _parse_response(self, response) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        if response.choices:
            msg = response.choices[0].message
            if reasoning := getattr(msg, "reasoning_content", None):
                events.append(ReasoningEvent(reasoning))

            text = msg.content or ""
            if msg.tool_calls:
                first = msg.tool_calls[0]
                rendered = render_function_call(first.function.name, first.function.arguments)
                text = f"{text}\n{rendered}" if text else rendered
            if text:
                events.append(TextEvent(text))

        if response.usage is not None:
            events.append(UsageEvent(self._parse_usage(response.usage)))
        return events

    def _parse_usage(self, usage) -> Usage:
        details = getattr(usage, "prompt_tokens_details", None)
        cache_read = (details.cached_tokens or 0) if details else 0
        return Usage(
            prompt_tokens=(usage.prompt_tokens or 0) - cache_read,
            completion_tokens=usage.completion_tokens or 0,
            cache_read_tokens=cache_read,
            cache_write_tokens=0,
        )
