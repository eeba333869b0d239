"""
OpenAI chat-completions backend.

Streaming responses are translated chunk by chunk: text deltas become 'content',
tool-call fragments become 'tool_call_deltas', and once the stream ends every
accumulated fragment is assembled into a complete 'ToolCall' on a final chunk.

SDK exceptions are mapped onto the 'LLMError' hierarchy here; rate limits keep the
provider's 'retry-after' header so the client can disable its retry action until
it elapses.
"""

from collections.abc import AsyncGenerator
from typing import Any

import openai
from loguru import logger
from openai import AsyncOpenAI

from eva_toolkit.llms.base import (
    LLM,
    Function,
    LLMError,
    LLMMessage,
    LLMRateLimitError,
    LLMTimeoutError,
    Roles,
    ToolCall,
    ToolCallDelta,
)
from eva_toolkit.tools.base import Tool


class OpenAILLM(LLM):
    def __init__(
        self,
        model_name: str = "gpt-4o-mini",
        temperature: float = 0.3,
        seed: int | None = None,
        openai_api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int | None = None,
        tools: list[Tool] | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__()
        self.model_name = model_name
        self.temperature = temperature
        self.seed = seed
        self.max_tokens = max_tokens
        self.tools = tools or []
        self.client = client or AsyncOpenAI(api_key=openai_api_key, base_url=base_url, max_retries=1)

    def _request_kwargs(self, conversation: list[LLMMessage]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model_name,
            "messages": [to_openai_message(message) for message in conversation],
            "temperature": self.temperature,
        }
        if self.seed is not None:
            kwargs["seed"] = self.seed
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        if self.tools:
            kwargs["tools"] = [tool.json_schema() for tool in self.tools]
        return kwargs

    async def generate(self, conversation: list[LLMMessage]) -> LLMMessage:
        try:
            completion = await self.client.chat.completions.create(**self._request_kwargs(conversation))
        except openai.OpenAIError as e:
            raise map_openai_error(e) from e

        choice = completion.choices[0].message
        tool_calls = [
            ToolCall(id=call.id, function=Function(name=call.function.name, arguments=call.function.arguments))
            for call in choice.tool_calls or []
        ]
        return LLMMessage(role=Roles.ASSISTANT, content=choice.content or "", tool_calls=tool_calls or None)

    async def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[LLMMessage, None]:
        pending: dict[int, dict[str, str]] = {}
        try:
            stream = await self.client.chat.completions.create(**self._request_kwargs(conversation), stream=True)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                deltas: list[ToolCallDelta] = []
                for fragment in delta.tool_calls or []:
                    entry = pending.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                    name = fragment.function.name if fragment.function else None
                    arguments = (fragment.function.arguments if fragment.function else None) or ""
                    if fragment.id:
                        entry["id"] = fragment.id
                    if name:
                        entry["name"] = name
                    entry["arguments"] += arguments
                    deltas.append(ToolCallDelta(index=fragment.index, id=fragment.id, name=name, arguments=arguments))
                if delta.content or deltas:
                    yield LLMMessage(content=delta.content or "", tool_call_deltas=deltas or None)
        except openai.OpenAIError as e:
            raise map_openai_error(e) from e

        if pending:
            tool_calls = [
                ToolCall(id=entry["id"], function=Function(name=entry["name"], arguments=entry["arguments"] or "{}"))
                for _, entry in sorted(pending.items())
            ]
            logger.debug(f"Model requested {len(tool_calls)} tool call(s): {[c.function.name for c in tool_calls]}")
            yield LLMMessage(tool_calls=tool_calls)


def to_openai_message(message: LLMMessage) -> dict[str, Any]:
    payload: dict[str, Any] = {"role": str(message.role), "content": message.content}
    if message.tool_calls:
        payload["tool_calls"] = [
            {"id": call.id, "type": call.type, "function": call.function.model_dump()} for call in message.tool_calls
        ]
    if message.tool_call_id:
        payload["tool_call_id"] = message.tool_call_id
    if message.name and message.role != Roles.TOOL:
        payload["name"] = message.name
    return payload


def map_openai_error(error: openai.OpenAIError) -> LLMError:
    if isinstance(error, openai.RateLimitError):
        return LLMRateLimitError("The model is receiving too many requests.", retry_after=_retry_after(error))
    if isinstance(error, openai.APITimeoutError):
        return LLMTimeoutError("The model took too long to respond.")
    if isinstance(error, openai.APIStatusError):
        return LLMError(f"The model call failed with status {error.status_code}.")
    return LLMError(str(error) or "The model call failed.")


def _retry_after(error: openai.RateLimitError) -> float | None:
    value = error.response.headers.get("retry-after") if error.response is not None else None
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
