"""
Tools the model can call.

A 'Tool' describes itself to the model with 'json_schema()' (the function-calling
descriptor sent with every request) and runs with 'call()' once the model asks
for it.

Tool results follow the MCP result shape: a dict with a 'content' list of typed
blocks ('text' or 'image') and an 'isError' flag. A tool that reports a failure
is not a transport error; the agent keeps the result and the conversation
renders it inline.

Tools are handed to the agent by a 'ToolProvider', which owns the connection the
tools run over. The provider is entered once per conversation turn and closed on
every exit path, so no connection outlives the turn that opened it.

Concrete implementations: 'MCPTool' / 'MCPToolProvider', 'StaticToolProvider'.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, TypedDict, Literal


class FunctionDescription(TypedDict):
    """The 'function' entry of a tool descriptor."""

    name: str
    description: str
    parameters: dict[str, Any]


class ToolDescription(TypedDict):
    """A tool descriptor as the chat completions API expects it."""

    type: Literal["function"]
    function: FunctionDescription


class Tool(ABC):
    """
    A callable tool.

    'name', 'description' and 'parameters' (a JSON schema) are set as class
    attributes, or per instance for tools discovered at runtime.
    """

    name: str
    description: str
    parameters: dict[str, Any]

    @abstractmethod
    async def call(self, args: dict[str, Any]) -> dict[str, Any]:
        """Execute the tool with the given arguments and return an MCP-shaped result dict."""
        pass

    def json_schema(self) -> ToolDescription:
        """Descriptor sent to the model in the 'tools' list."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def error_result(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": True}


class ToolProvider(ABC):
    """Source of the tools available to the agent during one turn."""

    @abstractmethod
    def session(self) -> Any:
        """Async context manager yielding the list of tools for a single turn."""
        pass


class StaticToolProvider(ToolProvider):
    """Provider for a fixed, connection-less tool list."""

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self.tools = tools or []

    @asynccontextmanager
    async def session(self) -> AsyncIterator[list[Tool]]:
        yield list(self.tools)
