"""Tests for the MCP tool provider with the MCP client patched out."""

from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest
from mcp.types import CallToolResult, TextContent

from eva_toolkit.conversation_database.data_models.message import ToolResult
from eva_toolkit.tools import mcp as mcp_tools
from eva_toolkit.tools.base import StaticToolProvider, error_result

from fakes import EchoTool


class FakeSession:
    instances: list["FakeSession"] = []

    def __init__(self, read, write) -> None:
        self.initialized = False
        self.closed = False
        self.calls: list[tuple[str, dict]] = []
        FakeSession.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True

    async def initialize(self):
        self.initialized = True

    async def list_tools(self):
        return SimpleNamespace(
            tools=[
                SimpleNamespace(name="biomcp_article_searcher", description="Search articles", inputSchema={"type": "object"}),
                SimpleNamespace(name="internal_admin", description=None, inputSchema={"type": "object"}),
            ]
        )

    async def call_tool(self, name, arguments=None):
        self.calls.append((name, arguments))
        return CallToolResult(content=[TextContent(type="text", text="3 articles")], isError=False)


@pytest.fixture
def patched_client(monkeypatch):
    opened = []
    FakeSession.instances = []

    @asynccontextmanager
    async def fake_streamablehttp_client(url, headers=None):
        opened.append((url, headers))
        yield "read", "write", lambda: None

    monkeypatch.setattr(mcp_tools, "streamablehttp_client", fake_streamablehttp_client)
    monkeypatch.setattr(mcp_tools, "ClientSession", FakeSession)
    return opened


@pytest.mark.asyncio
async def test_session_lists_allowed_tools_and_closes(patched_client):
    provider = mcp_tools.MCPToolProvider(
        "https://mcp.test/mcp/", api_key="secret", allowed_tools={"biomcp_article_searcher"}
    )

    async with provider.session() as tools:
        assert [tool.name for tool in tools] == ["biomcp_article_searcher"]
        assert tools[0].json_schema()["function"]["description"] == "Search articles"
        payload = await tools[0].call({"query": "IL6"})

    session = FakeSession.instances[0]
    assert patched_client == [("https://mcp.test/mcp/", {"Authorization": "Bearer secret"})]
    assert session.initialized and session.closed
    assert session.calls == [("biomcp_article_searcher", {"query": "IL6"})]
    result = ToolResult.from_mcp(payload)
    assert result.text == "3 articles"
    assert not result.is_error


@pytest.mark.asyncio
async def test_each_session_is_independent(patched_client):
    provider = mcp_tools.MCPToolProvider("https://mcp.test/mcp/")

    async with provider.session():
        pass
    async with provider.session() as tools:
        assert len(tools) == 2

    assert len(FakeSession.instances) == 2
    assert patched_client[0][1] == {}


@pytest.mark.asyncio
async def test_session_closes_when_the_turn_fails(patched_client):
    provider = mcp_tools.MCPToolProvider("https://mcp.test/mcp/")

    with pytest.raises(TimeoutError):
        async with provider.session():
            raise TimeoutError

    assert FakeSession.instances[0].closed


@pytest.mark.asyncio
async def test_static_provider():
    async with StaticToolProvider([EchoTool()]).session() as tools:
        assert await tools[0].call({"text": "a"}) == {"content": [{"type": "text", "text": "a"}], "isError": False}


def test_error_result_shape():
    assert ToolResult.from_mcp(error_result("nope")).is_error
