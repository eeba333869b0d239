"""
Chat controller (Facade).

'ChatController' is the single entry point for application logic. It
coordinates the chat database, the agent, the per-turn tool provider and the
object store to handle the full lifecycle of a conversation turn, plus the
conversation-scoped reads and annotation writes the API exposes.

A turn runs in two phases:

    'start_turn'  - creates the conversation on its first message (with a
                    generated title) and persists the user message. Any failure
                    here is raised before a stream exists, so the agent is never
                    called on top of a persistence failure.
    'stream_turn' - async generator that runs the agent under a deadline,
                    forwards its events, then persists the assistant message with
                    its initial annotation and yields the reconciliation payload.

Turn states: IDLE -> USER_MESSAGE_PERSISTED -> AGENT_RUNNING -> FINALIZING -> DONE,
with ERRORED reachable from AGENT_RUNNING and FINALIZING.

When the agent fails or times out, no assistant message is stored by the
server. The error event tells the client so, and the client persists what it
received itself. Both sides use the identity announced in the 'start' event, so
if they race the store still ends up with a single record.
"""

import asyncio
import base64
import binascii
import mimetypes
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from loguru import logger
from pydantic import BaseModel, model_validator

from eva_toolkit.agents.base import Agent, QueryWithContext, to_llm_messages
from eva_toolkit.conversation_database.base import ChatDatabase
from eva_toolkit.conversation_database.data_models.annotation import (
    MessageAnnotation,
    PartMetadataUpdate,
    Suggestion,
    report_parts,
)
from eva_toolkit.conversation_database.data_models.conversation import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    ConversationMetadata,
)
from eva_toolkit.conversation_database.data_models.message import (
    Message,
    MessageKey,
    Part,
    ToolResultContent,
    remove_unfinished_tool_calls,
)
from eva_toolkit.conversation_database.exceptions import ConversationNotFoundError
from eva_toolkit.llms.base import LLMError, Roles
from eva_toolkit.object_store.base import ObjectStore, conversation_prefix
from eva_toolkit.streaming.accumulator import MessageAccumulator
from eva_toolkit.streaming.events import (
    GENERIC_ERROR_MESSAGE,
    ErrorEvent,
    FinishEvent,
    ReconciliationEvent,
    StartEvent,
    StreamError,
    StreamEvent,
    ToolResultEvent,
)
from eva_toolkit.tools.base import Tool, ToolProvider
from eva_toolkit.utils.database import generate_message_id

DEFAULT_TURN_TIMEOUT = 120.0
MAX_FALLBACK_TITLE_LENGTH = 80

TitleGenerator = Callable[[Message], Awaitable[str]]
SuggestionGenerator = Callable[[Sequence[Message]], Awaitable[list[Suggestion]]]


class TurnState(StrEnum):
    IDLE = "idle"
    USER_MESSAGE_PERSISTED = "user_message_persisted"
    AGENT_RUNNING = "agent_running"
    FINALIZING = "finalizing"
    DONE = "done"
    ERRORED = "errored"


_TRANSITIONS = {
    TurnState.IDLE: {TurnState.USER_MESSAGE_PERSISTED},
    TurnState.USER_MESSAGE_PERSISTED: {TurnState.AGENT_RUNNING},
    TurnState.AGENT_RUNNING: {TurnState.FINALIZING, TurnState.ERRORED},
    TurnState.FINALIZING: {TurnState.DONE, TurnState.ERRORED},
    TurnState.DONE: set(),
    TurnState.ERRORED: set(),
}


class TurnRequest(BaseModel):
    """
    One chat turn as sent by the client.

    'messages' is the full local history; its last element is the new user
    message, carrying the identity the client generated for it.
    """

    conversation_id: str
    messages: list[Message]
    metadata: ConversationMetadata | None = None

    @model_validator(mode="after")
    def _last_message_is_user(self) -> "TurnRequest":
        if not self.messages or self.messages[-1].role != Roles.USER:
            raise ValueError("The last message of a turn must be a user message")
        return self

    @property
    def new_user_message(self) -> Message:
        return self.messages[-1]


class ClientConversation(Conversation):
    messages: list[Message]


class ReportItem(BaseModel):
    message_id: str
    part_idx: int
    part: Part


class TurnFailedError(Exception):
    def __init__(self, error: StreamError) -> None:
        super().__init__(error.message)
        self.error = error


@dataclass
class PreparedTurn:
    user_id: str
    conversation_id: str
    user_message: Message
    history: list[Message]
    is_first_exchange: bool
    assistant_message_id: str = field(default_factory=generate_message_id)
    state: TurnState = TurnState.IDLE

    def transition(self, state: TurnState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid turn transition {self.state} -> {state}")
        logger.debug(f"Turn {self.assistant_message_id}: {self.state} -> {state}")
        self.state = state


_DONE = object()


def fallback_title(message: Message) -> str:
    text = " ".join(message.text.split())
    return text[:MAX_FALLBACK_TITLE_LENGTH] or DEFAULT_CONVERSATION_TITLE


class ChatController:
    def __init__(
        self,
        chat_db: ChatDatabase,
        agent: Agent,
        tool_provider: ToolProvider | None = None,
        object_store: ObjectStore | None = None,
        title_generator: TitleGenerator | None = None,
        suggestion_generator: SuggestionGenerator | None = None,
        turn_timeout: float = DEFAULT_TURN_TIMEOUT,
    ):
        self.chat_db = chat_db
        self.agent = agent
        self.tool_provider = tool_provider
        self.object_store = object_store
        self.title_generator = title_generator
        self.suggestion_generator = suggestion_generator
        self.turn_timeout = turn_timeout

    async def _check_owner(self, user_id: str, conversation_id: str) -> None:
        owner = await self.chat_db.get_conversation_owner(conversation_id)
        if owner is not None and owner != user_id:
            raise ConversationNotFoundError(conversation_id)

    async def _require_conversation(self, user_id: str, conversation_id: str) -> Conversation:
        owner = await self.chat_db.get_conversation_owner(conversation_id)
        conversation = await self.chat_db.get_conversation_by_id(user_id, conversation_id) if owner == user_id else None
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def _generate_title(self, message: Message) -> str:
        if self.title_generator is None:
            return fallback_title(message)
        try:
            return (await self.title_generator(message)).strip() or fallback_title(message)
        except Exception as e:
            logger.warning(f"Title generation failed, using message text: {e}")
            return fallback_title(message)

    async def _generate_suggestions(self, messages: Sequence[Message]) -> list[Suggestion]:
        if self.suggestion_generator is None:
            return []
        try:
            return await self.suggestion_generator(messages)
        except Exception as e:
            logger.warning(f"Suggestion generation failed, continuing without suggestions: {e}")
            return []

    @asynccontextmanager
    async def _tool_session(self) -> AsyncIterator[list[Tool]]:
        if self.tool_provider is None:
            yield []
            return
        async with self.tool_provider.session() as tools:
            yield tools

    async def start_turn(self, request: TurnRequest, user_id: str) -> PreparedTurn:
        conversation_id = request.conversation_id
        user_message = request.new_user_message
        if user_message.conversation_id != conversation_id:
            user_message = user_message.model_copy(update={"conversation_id": conversation_id})

        # Guarded by message count only: a duplicated first turn may summarise twice,
        # but the second create is a no-op.
        is_first_exchange = len(request.messages) == 1
        if is_first_exchange:
            await self._check_owner(user_id, conversation_id)
            title = await self._generate_title(user_message)
            await self.chat_db.create_conversation(
                Conversation(id=conversation_id, user_id=user_id, title=title, metadata=request.metadata),
                exist_ok=True,
            )
            logger.info(f"Started conversation {conversation_id} ({title!r})")
        else:
            await self._require_conversation(user_id, conversation_id)

        persisted = await self.chat_db.create_message(user_message)
        turn = PreparedTurn(
            user_id=user_id,
            conversation_id=conversation_id,
            user_message=persisted,
            history=[*request.messages[:-1], persisted],
            is_first_exchange=is_first_exchange,
        )
        turn.transition(TurnState.USER_MESSAGE_PERSISTED)
        return turn

    async def _offload_images(self, conversation_id: str, event: ToolResultEvent) -> ToolResultEvent:
        if self.object_store is None:
            return event
        content: list[ToolResultContent] = []
        for i, block in enumerate(event.result.content):
            if block.type != "image" or not block.data or block.object_key:
                content.append(block)
                continue
            mime_type = block.mime_type or "image/png"
            name = f"{event.tool_call_id}-{i}{mimetypes.guess_extension(mime_type) or ''}"
            try:
                key = await self.object_store.upload(conversation_id, name, base64.b64decode(block.data), mime_type)
            except (binascii.Error, ValueError) as e:
                logger.warning(f"Tool {event.tool_name} returned an undecodable image: {e}")
                content.append(block)
                continue
            except Exception:
                logger.exception(f"Upload of {name} failed, keeping the image inline")
                content.append(block)
                continue
            content.append(block.model_copy(update={"data": None, "object_key": key}))
        result = event.result.model_copy(update={"content": content})
        return event.model_copy(update={"result": result})

    async def _run_agent(self, turn: PreparedTurn, queue: asyncio.Queue[Any]) -> None:
        query = QueryWithContext(query=turn.user_message.text, history=to_llm_messages(turn.history[:-1]))
        try:
            async with self._tool_session() as tools:
                agent = self.agent.bind_tools(tools)
                async for event in agent.answer_stream(query):
                    if isinstance(event, ToolResultEvent):
                        event = await self._offload_images(turn.conversation_id, event)
                    await queue.put(event)
        except Exception as e:
            await queue.put(e)
        else:
            await queue.put(_DONE)

    async def _agent_events(self, turn: PreparedTurn) -> AsyncGenerator[Any, None]:
        """Yield agent events until the agent finishes, raising its error or 'TimeoutError'."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.turn_timeout
        queue: asyncio.Queue[Any] = asyncio.Queue()
        producer = asyncio.create_task(self._run_agent(turn, queue))
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise TimeoutError
                item = await asyncio.wait_for(queue.get(), timeout=remaining)
                if item is _DONE:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            if not producer.done():
                producer.cancel()
                with suppress(asyncio.CancelledError):
                    await producer

    async def stream_turn(self, turn: PreparedTurn) -> AsyncGenerator[StreamEvent, None]:
        assistant = Message(id=turn.assistant_message_id, conversation_id=turn.conversation_id, role=Roles.ASSISTANT)
        accumulator = MessageAccumulator(assistant)
        yield StartEvent(message_id=assistant.id)

        turn.transition(TurnState.AGENT_RUNNING)
        error: StreamError | None = None
        events = self._agent_events(turn)
        try:
            async for event in events:
                accumulator.apply(event)
                yield event
        except TimeoutError:
            logger.warning(f"Turn in conversation {turn.conversation_id} exceeded {self.turn_timeout}s")
            error = StreamError(kind="timeout", message="The assistant took too long to respond. Please try again.")
        except LLMError as e:
            logger.warning(f"Agent call failed ({e.kind}): {e.message}")
            error = StreamError(kind=e.kind, message=e.message, retry_after=e.retry_after)
        except Exception:
            logger.exception(f"Agent failed in conversation {turn.conversation_id}")
            error = StreamError(kind="upstream", message=GENERIC_ERROR_MESSAGE)
        finally:
            await events.aclose()

        if error is not None:
            turn.transition(TurnState.ERRORED)
            yield ErrorEvent(error=error)
            return

        turn.transition(TurnState.FINALIZING)
        try:
            suggestions = await self._generate_suggestions([*turn.history, assistant])
            final = remove_unfinished_tool_calls(assistant).model_copy(
                update={"annotation": MessageAnnotation(parts={}, suggestions=suggestions)}
            )
            persisted_assistant = await self.chat_db.create_message(final)
            confirmed_user = (
                await self.chat_db.get_message_by_id(turn.conversation_id, turn.user_message.id) or turn.user_message
            )
        except Exception:
            logger.exception(f"Finalizing turn {assistant.id} failed")
            turn.transition(TurnState.ERRORED)
            yield ErrorEvent(error=StreamError(kind="internal", message=GENERIC_ERROR_MESSAGE))
            return

        turn.transition(TurnState.DONE)
        logger.info(f"Turn {assistant.id} persisted with {len(persisted_assistant.parts)} part(s)")
        yield ReconciliationEvent(
            confirmed_user_message=confirmed_user,
            is_first_exchange=turn.is_first_exchange,
            confirmed_assistant_message=persisted_assistant,
        )
        yield FinishEvent(message_id=assistant.id)

    async def process_turn_stream(self, request: TurnRequest, user_id: str) -> AsyncGenerator[StreamEvent, None]:
        turn = await self.start_turn(request, user_id)
        async for event in self.stream_turn(turn):
            yield event

    async def process_turn(self, request: TurnRequest, user_id: str) -> Message:
        """Run a whole turn without streaming and return the persisted assistant message."""
        last_message = None
        async for event in self.process_turn_stream(request, user_id):
            if isinstance(event, ErrorEvent):
                raise TurnFailedError(event.error)
            if isinstance(event, ReconciliationEvent):
                last_message = event.confirmed_assistant_message
        if last_message is None:
            raise Exception("No message was generated from the stream")
        return last_message

    async def get_conversations(self, user_id: str) -> list[Conversation]:
        conversations = await self.chat_db.get_conversations_by_user_id(user_id)
        return sorted(conversations, key=lambda c: c.create_timestamp, reverse=True)

    async def get_conversation(self, user_id: str, conversation_id: str) -> ClientConversation:
        conversation = await self._require_conversation(user_id, conversation_id)
        messages = await self.chat_db.get_messages_by_conversation_id(conversation_id)
        return ClientConversation(**conversation.model_dump(), messages=messages)

    async def get_messages(
        self, user_id: str, conversation_id: str, keys_only: bool = False
    ) -> list[Message] | list[MessageKey]:
        await self._require_conversation(user_id, conversation_id)
        return await self.chat_db.list_messages(conversation_id, keys_only=keys_only)

    async def save_message(self, user_id: str, conversation_id: str, message: Message) -> Message:
        """Idempotently store a message the client assembled itself."""
        await self._require_conversation(user_id, conversation_id)
        if message.conversation_id != conversation_id:
            raise ValueError(f"Message {message.id} does not belong to conversation {conversation_id}")
        cleaned = remove_unfinished_tool_calls(message)
        logger.info(f"Client-side save of message {message.id} in conversation {conversation_id}")
        return await self.chat_db.create_message(cleaned)

    async def update_message_part(
        self,
        user_id: str,
        conversation_id: str,
        message_id: str,
        part_idx: int,
        updates: PartMetadataUpdate,
    ) -> None:
        await self._require_conversation(user_id, conversation_id)
        await self.chat_db.update_message_part(conversation_id, message_id, part_idx, updates)

    async def get_report(self, user_id: str, conversation_id: str) -> list[ReportItem]:
        await self._require_conversation(user_id, conversation_id)
        messages = await self.chat_db.get_messages_by_conversation_id(conversation_id)
        return [
            ReportItem(message_id=message.id, part_idx=idx, part=part) for message, idx, part in report_parts(messages)
        ]

    async def get_object_url(self, user_id: str, key: str) -> str:
        if self.object_store is None:
            raise RuntimeError("No object store configured")
        segments = key.split("/")
        conversation_id = segments[1] if len(segments) > 2 else ""
        if not conversation_id or not key.startswith(conversation_prefix(conversation_id)):
            raise ValueError(f"Invalid object key {key!r}")
        await self._require_conversation(user_id, conversation_id)
        return await self.object_store.get_signed_url(key)

    async def delete_conversation(self, user_id: str, conversation_id: str) -> None:
        await self._require_conversation(user_id, conversation_id)
        if self.object_store is not None:
            try:
                removed = await self.object_store.delete_prefix(conversation_id)
                logger.info(f"Deleted {removed} object(s) of conversation {conversation_id}")
            except Exception:
                logger.exception(f"Could not delete objects of conversation {conversation_id}")
        await self.chat_db.delete_conversation(user_id, conversation_id)
