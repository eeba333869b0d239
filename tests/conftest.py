"""Shared fixtures: in-memory store, fake agent and a controller wired to them."""

import pytest

from eva_toolkit.conversation_database.controller import ChatController
from eva_toolkit.conversation_database.in_memory import InMemoryChatDatabase
from eva_toolkit.streaming.events import TextDeltaEvent

from fakes import FakeObjectStore, RecordingToolProvider, ScriptedAgent


@pytest.fixture
def user_id():
    return "user-1"


@pytest.fixture
def conversation_id():
    return "conv-1"


@pytest.fixture
def chat_db():
    return InMemoryChatDatabase()


@pytest.fixture
def agent():
    return ScriptedAgent(events=[TextDeltaEvent(text="Hi "), TextDeltaEvent(text="there!")])


@pytest.fixture
def tool_provider():
    return RecordingToolProvider()


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def controller(chat_db, agent, tool_provider, object_store):
    return ChatController(
        chat_db=chat_db,
        agent=agent,
        tool_provider=tool_provider,
        object_store=object_store,
        turn_timeout=2.0,
    )
