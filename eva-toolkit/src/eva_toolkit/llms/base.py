"""
Model backends and the message format they exchange with agents.

'OpenAILLM' is the only backend so far. Agents, the title and suggestion
helpers all talk to it through the 'LLM' ABC and 'LLMMessage', which mirror the
chat completions shape without depending on the SDK.

Streaming responses carry two kinds of tool information: 'tool_call_deltas'
(argument fragments as the model produces them, used to show a pending tool call
to the user early) and 'tool_calls' (complete calls, emitted once the model has
finished them). Agents execute only complete calls.

Upstream failures are raised as 'LLMError' subclasses. The 'kind' attribute is
what the controller forwards to the client, so error classification happens once,
at the boundary that knows the SDK's exception types.
"""

import copy
from abc import ABC, abstractmethod
from enum import StrEnum
from collections.abc import AsyncGenerator

from pydantic import BaseModel

from eva_toolkit.tools.base import Tool


class Roles(StrEnum):
    """Message roles of the chat completions API."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Function(BaseModel):
    """Name of the called function and its arguments as a JSON string."""

    name: str
    arguments: str


class ToolCall(BaseModel):
    """A complete tool call requested by the model."""

    id: str
    function: Function
    type: str = "function"


class ToolCallDelta(BaseModel):
    """A fragment of a tool call while the model is still generating it.

    'id' and 'name' are only present on the first fragment of a given 'index'.
    """

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


class LLMMessage(BaseModel):
    """
    One chat message, or one streamed chunk of an assistant message.

    Assistant messages that call tools carry 'tool_calls'; the TOOL message
    answering a call carries its 'tool_call_id' and the tool 'name'.
    """

    content: str = ""
    role: Roles = Roles.ASSISTANT
    tool_calls: list[ToolCall] | None = None
    tool_call_deltas: list[ToolCallDelta] | None = None
    tool_call_id: str | None = None
    name: str | None = None


class LLMError(Exception):
    """An upstream model call failed."""

    kind = "upstream"

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after


class LLMRateLimitError(LLMError):
    """The provider rejected the call for rate limiting; 'retry_after' is in seconds."""

    kind = "rate_limit"


class LLMTimeoutError(LLMError):
    kind = "timeout"


class LLM(ABC):
    """
    A language model backend.

    The tools a model may call live on the instance, next to the client that
    sends their schemas. Tool sets change every turn (they come from that
    turn's MCP session), so 'with_tools' hands out a shallow copy bound to the
    new list and the shared instance is never mutated.
    """

    def __init__(self) -> None:
        self.tools: list[Tool] | None = []

    def with_tools(self, tools: list[Tool]) -> "LLM":
        clone = copy.copy(self)
        clone.tools = list(tools)
        return clone

    @abstractmethod
    async def generate(self, conversation: list[LLMMessage]) -> LLMMessage:
        """Return the whole reply to 'conversation' in one message."""
        pass

    @abstractmethod
    def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[LLMMessage, None]:
        """Yield the reply to 'conversation' chunk by chunk."""
        pass

