from collections.abc import AsyncIterator

import anthropic
import httpx

from tabpilot.constants import ANTHROPIC_CACHED_USER_MESSAGES
from tabpilot.llm.base import ProviderAdapter
from tabpilot.llm.models import Model
from tabpilot.llm.types import ReasoningEvent, StreamEvent, TextEvent, ToolSpec, UsageEvent
from tabpilot.usage import Usage

REDACTED_THINKING = "[Redacted thinking]"
EMPTY_TURN_TEXT = "(no output)"


class AnthropicProvider(ProviderAdapter):
    name = "anthropic"
    # Claude follows the textual grammar directly; native tool_use is not requested.
    native_tools = False
    transport_errors = (anthropic.APIError, httpx.HTTPError)

    def __init__(self, model: Model, api_key: str | None = None):
        super().__init__(model)
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    async def _stream(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[ToolSpec] | None,
    ) -> AsyncIterator[StreamEvent]:
        request = self._build_request(system_prompt, messages)
        stream = await self._client.messages.create(**request, stream=True)

        usage = Usage()
        text_blocks = 0
        async for event in stream:
            match event.type:
                case "message_start":
                    usage = self._parse_usage(event.message.usage)
                    yield UsageEvent(usage)
                case "message_delta":
                    if event.usage is not None:
                        usage = Usage(
                            prompt_tokens=usage.prompt_tokens,
                            completion_tokens=event.usage.output_tokens,
                            cache_read_tokens=usage.cache_read_tokens,
                            cache_write_tokens=usage.cache_write_tokens,
                        )
                        yield UsageEvent(usage)
                case "content_block_start":
                    block = event.content_block
                    if block.type == "text":
                        if text_blocks:
                            yield TextEvent("\n")
                        text_blocks += 1
                        if block.text:
                            yield TextEvent(block.text)
                    elif block.type == "thinking" and block.thinking:
                        yield ReasoningEvent(block.thinking)
                    elif block.type == "redacted_thinking":
                        yield ReasoningEvent(REDACTED_THINKING)
                case "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        yield TextEvent(delta.text)
                    elif delta.type == "thinking_delta":
                        yield ReasoningEvent(delta.thinking)

    async def _complete(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[ToolSpec] | None,
    ) -> list[StreamEvent]:
        request = self._build_request(system_prompt, messages)
        response = await self._client.messages.create(**request)
        return self._parse_response(response)

    async def close(self) -> None:
        await self._client.close()

    # --- Request building ---

    def _build_request(self, system_prompt: str, messages: list[dict]) -> dict:
        request: dict = {
            "model": self.model.id,
            "max_tokens": self.model.max_output_tokens,
            "messages": self._convert_messages(messages),
        }
        if system_prompt:
            request["system"] = [
                {"type": "text", "text": system_prompt, "cache_control": {"type": "ephemeral"}}
            ]
        return request

    # --- Message conversion ---

    def _convert_messages(self, messages: list[dict]) -> list[dict]:
        result = [{"role": msg["role"], "content": self._convert_content(msg["content"])} for msg in messages]
        self._inject_cache_control(result)
        return result

    def _convert_content(self, content: str | list) -> list[dict]:
        if isinstance(content, str):
            blocks = [{"type": "text", "text": content}]
        else:
            blocks = [dict(block) if isinstance(block, dict) else {"type": "text", "text": str(block)} for block in content]
        # The API rejects empty text blocks.
        blocks = [b for b in blocks if b.get("type") != "text" or b.get("text")]
        return blocks or [{"type": "text", "text": EMPTY_TURN_TEXT}]

    def _inject_cache_control(self, messages: list[dict]) -> None:
        user_indices = [i for i, m in enumerate(messages) if m["role"] == "user"]
        for i in user_indices[-ANTHROPIC_CACHED_USER_MESSAGES:]:
            blocks = messages[i]["content"]
            if blocks:
                blocks[-1]["cache_control"] = {"type": "ephemeral"}

    # --- Response parsing ---

    def _parse_response(self, response) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        text_parts: list[str] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "thinking":
                events.append(ReasoningEvent(block.thinking))
            elif block.type == "redacted_thinking":
                events.append(ReasoningEvent(REDACTED_THINKING))

        if text_parts:
            events.append(TextEvent("\n".join(text_parts)))
        events.append(UsageEvent(self._parse_usage(response.usage)))
        return events

    def _parse_usage(self, usage) -> Usage:
        return Usage(
            prompt_tokens=usage.input_tokens or 0,
            completion_tokens=usage.output_tokens or 0,
            cache_read_tokens=getattr(usage, "cache_read_input_tokens", None) or 0,
            cache_write_tokens=getattr(usage, "cache_creation_input_tokens", None) or 0,
        )
