"""
Tools served by a remote MCP server.

'MCPToolProvider.session()' opens a fresh streamable-HTTP client session for a
single turn, lists the server's tools and wraps each one as an 'MCPTool'. The
session is closed when the turn leaves the context, whether it finished, failed
or hit its deadline. Sessions are not shared across turns.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from loguru import logger
from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from eva_toolkit.tools.base import Tool, ToolProvider


class MCPTool(Tool):
    def __init__(self, session: ClientSession, name: str, description: str, parameters: dict[str, Any]) -> None:
        self.session = session
        self.name = name
        self.description = description
        self.parameters = parameters

    async def call(self, args: dict[str, Any]) -> dict[str, Any]:
        logger.info(f"Calling MCP tool {self.name}")
        result = await self.session.call_tool(self.name, arguments=args)
        return result.model_dump(mode="json")


class MCPToolProvider(ToolProvider):
    def __init__(self, url: str, api_key: str | None = None, allowed_tools: set[str] | None = None) -> None:
        self.url = url
        self.api_key = api_key
        self.allowed_tools = allowed_tools

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    @asynccontextmanager
    async def session(self) -> AsyncIterator[list[Tool]]:
        async with streamablehttp_client(self.url, headers=self._headers()) as (read, write, _):
            async with ClientSession(read, write) as session:
                await session.initialize()
                listing = await session.list_tools()
                tools: list[Tool] = [
                    MCPTool(session, tool.name, tool.description or "", tool.inputSchema)
                    for tool in listing.tools
                    if self.allowed_tools is None or tool.name in self.allowed_tools
                ]
                logger.debug(f"MCP session opened with {len(tools)} tool(s)")
                yield tools
        logger.debug("MCP session closed")
