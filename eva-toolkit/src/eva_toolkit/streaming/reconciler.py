"""
Client-side streaming reconciler.

'StreamingReconciler' keeps the local message list of one conversation in step
with the store while turns stream in. The local list is the source of truth for
rendering; the store is the source of truth for identity and annotations.

Lifecycle of a turn:

    submit          - the user message is appended optimistically, with an
                      identity generated here and reused by the server.
    start           - the assistant message is created locally under the
                      identity the server announced.
    agent events    - folded into the assistant message by 'MessageAccumulator'.
    reconciliation  - the optimistic user message (and the local assistant copy)
                      are replaced by the persisted versions.
    error           - if the agent failed, the server stored nothing for the
                      assistant. When the local list is longer than the
                      persisted one, the trailing local message is saved from
                      here instead ("compensating persistence").

Annotation changes (report membership, thresholds) are sent to the server first
and merged locally only once it confirmed them.
"""

import inspect
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum

import httpx
from loguru import logger
from pydantic import ValidationError

from eva_toolkit.conversation_database.controller import TurnRequest
from eva_toolkit.conversation_database.data_models.annotation import (
    PartMetadataUpdate,
    merge_part_field,
    report_parts,
)
from eva_toolkit.conversation_database.data_models.conversation import ConversationMetadata
from eva_toolkit.conversation_database.data_models.message import (
    Message,
    Part,
    TextPart,
    remove_unfinished_tool_calls,
)
from eva_toolkit.llms.base import Roles
from eva_toolkit.streaming.accumulator import MessageAccumulator
from eva_toolkit.streaming.events import (
    GENERIC_ERROR_MESSAGE,
    ErrorEvent,
    FinishEvent,
    ReconciliationEvent,
    StartEvent,
    StreamError,
    StreamEvent,
)
from eva_toolkit.streaming.transport import ChatTransport
from eva_toolkit.utils.database import generate_message_id

FirstExchangeCallback = Callable[[str], Awaitable[None] | None]


class ChatStatus(StrEnum):
    READY = "ready"
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    ERROR = "error"


class TurnInProgressError(Exception):
    """A turn is already in flight for this conversation."""


class RetryNotAvailableError(Exception):
    def __init__(self, seconds_left: float) -> None:
        super().__init__(f"Retry available in {seconds_left:.0f}s")
        self.seconds_left = seconds_left


class StreamingReconciler:
    def __init__(
        self,
        transport: ChatTransport,
        conversation_id: str,
        messages: list[Message] | None = None,
        metadata: ConversationMetadata | None = None,
        on_first_exchange: FirstExchangeCallback | None = None,
    ) -> None:
        self.transport = transport
        self.conversation_id = conversation_id
        self.messages: list[Message] = list(messages or [])
        self.metadata = metadata
        self.on_first_exchange = on_first_exchange
        self.status = ChatStatus.READY
        self.last_error: StreamError | None = None
        self.retry_available_at: float | None = None
        self._accumulator: MessageAccumulator | None = None
        self._reconciled = False
        self._finished = False

    @property
    def is_busy(self) -> bool:
        return self.status in (ChatStatus.SUBMITTED, ChatStatus.STREAMING)

    async def submit(self, text: str) -> Message | None:
        message = Message(
            id=generate_message_id(),
            conversation_id=self.conversation_id,
            role=Roles.USER,
            parts=[TextPart(text=text)],
        )
        return await self.submit_message(message)

    async def submit_message(self, message: Message) -> Message | None:
        """Run one turn and return the assistant message, or None if the turn failed."""
        if self.is_busy:
            raise TurnInProgressError(f"A turn is already running in conversation {self.conversation_id}")
        self.status = ChatStatus.SUBMITTED
        self.last_error = None
        self._accumulator = None
        self._reconciled = False
        self._finished = False
        self.messages.append(message)

        request = TurnRequest(conversation_id=self.conversation_id, messages=list(self.messages), metadata=self.metadata)
        try:
            async for event in self.transport.stream_turn(request):
                await self._handle(event)
        except (httpx.HTTPError, ValidationError) as e:
            logger.warning(f"Chat stream failed: {e}")
            self._fail(StreamError(kind="internal", message=GENERIC_ERROR_MESSAGE))
        except BaseException:
            self.status = ChatStatus.ERROR
            raise

        if self.status == ChatStatus.ERROR:
            return None
        if not self._finished:
            logger.warning("Chat stream ended without a finish event")
            self._fail(StreamError(kind="internal", message=GENERIC_ERROR_MESSAGE))
            return None
        return self.messages[-1] if self.messages[-1].role == Roles.ASSISTANT else None

    def _fail(self, error: StreamError) -> None:
        self.last_error = error
        self.status = ChatStatus.ERROR

    async def _handle(self, event: StreamEvent) -> None:
        if isinstance(event, StartEvent):
            self.status = ChatStatus.STREAMING
            assistant = Message(id=event.message_id, conversation_id=self.conversation_id, role=Roles.ASSISTANT)
            self.messages.append(assistant)
            self._accumulator = MessageAccumulator(assistant)
        elif isinstance(event, ReconciliationEvent):
            await self._reconcile(event)
        elif isinstance(event, ErrorEvent):
            await self._on_error(event.error)
        elif isinstance(event, FinishEvent):
            self._finished = True
            self.status = ChatStatus.READY
        elif self._accumulator is not None:
            self._accumulator.apply(event)

    def _replace_latest(self, confirmed: Message) -> None:
        candidates = [i for i, message in enumerate(self.messages) if message.role == confirmed.role]
        if not candidates:
            self.messages.append(confirmed)
            return
        for i in reversed(candidates):
            if self.messages[i].id == confirmed.id:
                self.messages[i] = confirmed
                return
        self.messages[candidates[-1]] = confirmed

    async def _reconcile(self, event: ReconciliationEvent) -> None:
        if self._reconciled:
            return
        self._reconciled = True
        self._replace_latest(event.confirmed_user_message)
        if event.confirmed_assistant_message is not None:
            self._replace_latest(event.confirmed_assistant_message)
        if event.is_first_exchange and self.on_first_exchange is not None:
            result = self.on_first_exchange(self.conversation_id)
            if inspect.isawaitable(result):
                await result

    async def _on_error(self, error: StreamError) -> None:
        self._fail(error)
        if error.kind == "rate_limit" and error.retry_after:
            self.retry_available_at = time.monotonic() + error.retry_after
        if error.is_upstream_failure:
            await self._compensate()

    async def _compensate(self) -> None:
        try:
            keys = await self.transport.list_message_keys(self.conversation_id)
            if len(self.messages) <= len(keys):
                return
            trailing = remove_unfinished_tool_calls(self.messages[-1])
            logger.info(f"Persisting message {trailing.id} after a failed turn")
            self.messages[-1] = await self.transport.save_message(self.conversation_id, trailing)
        except httpx.HTTPError as e:
            logger.warning(f"Compensating save failed: {e}")

    def _find(self, message_id: str) -> int:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        raise KeyError(message_id)

    async def update_part(self, message_id: str, part_idx: int, updates: PartMetadataUpdate) -> Message:
        i = self._find(message_id)
        await self.transport.update_message_part(self.conversation_id, message_id, part_idx, updates)
        message = self.messages[i]
        updated = message.model_copy(update={"annotation": merge_part_field(message.annotation, part_idx, updates)})
        self.messages[i] = updated
        return updated

    async def toggle_report(self, message_id: str, part_idx: int, is_in_report: bool) -> Message:
        return await self.update_part(message_id, part_idx, PartMetadataUpdate(is_in_report=is_in_report))

    async def set_threshold(self, message_id: str, part_idx: int, threshold: float) -> Message:
        return await self.update_part(message_id, part_idx, PartMetadataUpdate(threshold=threshold))

    def retry_in(self) -> float:
        if self.retry_available_at is None:
            return 0.0
        return max(0.0, self.retry_available_at - time.monotonic())

    async def retry(self) -> Message | None:
        """Submit the last user message again once any rate-limit wait has passed."""
        seconds_left = self.retry_in()
        if seconds_left > 0:
            raise RetryNotAvailableError(seconds_left)
        if self.is_busy:
            raise TurnInProgressError(f"A turn is already running in conversation {self.conversation_id}")
        if not self.messages:
            raise ValueError("Nothing to retry")
        self.retry_available_at = None
        last = self.messages[-1]
        if last.role == Roles.USER:
            # never answered: send the same identity again
            self.messages.pop()
            return await self.submit_message(last)
        last_user = next((m for m in reversed(self.messages) if m.role == Roles.USER), None)
        if last_user is None:
            raise ValueError("No user message to retry")
        return await self.submit(last_user.text)

    def report(self) -> list[tuple[Message, int, Part]]:
        return list(report_parts(self.messages))
