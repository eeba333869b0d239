"""
Application wiring.

'build_controller' assembles the chat controller from settings: storage backend
(in-memory or DynamoDB), optional S3 object store, the MCP tool provider and the
OpenAI-backed tool agent plus its title and suggestion helpers. 'build_app'
wraps it in the FastAPI application.

Environment (prefix 'EVA_'), e.g.:
    EVA_STORE=dynamodb EVA_TABLE_NAME=Chat EVA_BUCKET=eva-figures \\
    EVA_MCP_URL=https://mcp.example.org/mcp/ python -m eva_backend

Secrets: OPENAI_API_KEY and PLATFORM_API_KEY (MCP bearer token), as files under
/secrets or environment variables.
"""

from fastapi import FastAPI
from loguru import logger

from eva_backend.config import Settings, get_secret, load_settings
from eva_backend.generators import SuggestionGenerator, TitleGenerator
from eva_backend.log import configure_logging
from eva_backend.prompts import SYSTEM_PROMPT
from eva_backend.tools import TOOL_LABELS
from eva_toolkit.agents.tool_agent import ToolAgent
from eva_toolkit.api.auth.header import HeaderAuthProvider
from eva_toolkit.api.server import create_app
from eva_toolkit.conversation_database.base import ChatDatabase
from eva_toolkit.conversation_database.controller import ChatController
from eva_toolkit.conversation_database.dynamodb import DynamoDBChatDatabase
from eva_toolkit.conversation_database.in_memory import InMemoryChatDatabase
from eva_toolkit.llms.openai import OpenAILLM
from eva_toolkit.object_store.base import ObjectStore
from eva_toolkit.object_store.s3 import S3ObjectStore
from eva_toolkit.tools.base import ToolProvider
from eva_toolkit.tools.mcp import MCPToolProvider


def build_chat_db(settings: Settings) -> ChatDatabase:
    match settings.store:
        case "dynamodb":
            logger.info(f"Chat store: DynamoDB table {settings.table_name}")
            return DynamoDBChatDatabase(table_name=settings.table_name, region_name=settings.aws_region)
        case _:
            logger.warning("Chat store: in-memory, conversations are lost on restart")
            return InMemoryChatDatabase()


def build_object_store(settings: Settings) -> ObjectStore | None:
    if not settings.bucket:
        logger.info("No bucket configured, tool images stay inline")
        return None
    return S3ObjectStore(bucket=settings.bucket, region_name=settings.aws_region)


def build_tool_provider(settings: Settings) -> ToolProvider | None:
    if not settings.mcp_url:
        logger.warning("No MCP server configured, the agent runs without tools")
        return None
    return MCPToolProvider(
        url=settings.mcp_url,
        api_key=get_secret("PLATFORM_API_KEY", required=False) or None,
        allowed_tools=set(TOOL_LABELS),
    )


def build_controller(settings: Settings) -> ChatController:
    api_key = get_secret("OPENAI_API_KEY")
    llm = OpenAILLM(model_name=settings.model_name, openai_api_key=api_key, base_url=settings.llm_base_url)
    small_llm = OpenAILLM(
        model_name=settings.small_model_name,
        openai_api_key=api_key,
        base_url=settings.llm_base_url,
        max_tokens=400,
    )
    logger.info(f"LLM backend: OpenAI ({settings.model_name}, helpers: {settings.small_model_name})")
    return ChatController(
        chat_db=build_chat_db(settings),
        agent=ToolAgent(system_prompt=SYSTEM_PROMPT, llm=llm, max_steps=settings.max_steps),
        tool_provider=build_tool_provider(settings),
        object_store=build_object_store(settings),
        title_generator=TitleGenerator(small_llm),
        suggestion_generator=SuggestionGenerator(small_llm),
        turn_timeout=settings.turn_timeout,
    )


def build_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    auth_provider = HeaderAuthProvider(header_name=settings.user_header, default_user_id=settings.default_user_id)
    return create_app(build_controller(settings), auth_provider, cors_origins=settings.cors_origins)
