"""
Chat stream wire format.

A turn is streamed as newline-delimited JSON, one event per line, discriminated
on 'type'. The agent produces the incremental events ('text-delta',
'tool-call-start', 'tool-call-delta', 'tool-call', 'tool-result'); the controller
frames them with 'start' (carrying the server-generated assistant message id),
and ends the turn with either 'reconciliation' + 'finish' or a single 'error'.

Error kinds 'upstream', 'rate_limit' and 'timeout' mean the agent call failed,
which guarantees the server never persisted the assistant message. 'internal'
covers failures after the agent finished.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

from eva_toolkit.conversation_database.data_models.message import Message, ToolResult

ErrorKind = Literal["upstream", "rate_limit", "timeout", "internal"]
UPSTREAM_ERROR_KINDS = ("upstream", "rate_limit", "timeout")
GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


class StartEvent(BaseModel):
    type: Literal["start"] = "start"
    message_id: str


class TextDeltaEvent(BaseModel):
    type: Literal["text-delta"] = "text-delta"
    text: str


class ToolCallStartEvent(BaseModel):
    type: Literal["tool-call-start"] = "tool-call-start"
    tool_call_id: str
    tool_name: str


class ToolCallDeltaEvent(BaseModel):
    type: Literal["tool-call-delta"] = "tool-call-delta"
    tool_call_id: str
    args_text_delta: str


class ToolCallEvent(BaseModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResultEvent(BaseModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    result: ToolResult


class StreamError(BaseModel):
    kind: ErrorKind
    message: str
    retry_after: float | None = None

    @property
    def is_upstream_failure(self) -> bool:
        return self.kind in UPSTREAM_ERROR_KINDS


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: StreamError


class ReconciliationEvent(BaseModel):
    type: Literal["reconciliation"] = "reconciliation"
    confirmed_user_message: Message
    is_first_exchange: bool
    confirmed_assistant_message: Message | None = None


class FinishEvent(BaseModel):
    type: Literal["finish"] = "finish"
    message_id: str


AgentEvent = Annotated[
    TextDeltaEvent | ToolCallStartEvent | ToolCallDeltaEvent | ToolCallEvent | ToolResultEvent,
    Field(discriminator="type"),
]

StreamEvent = Annotated[
    StartEvent
    | TextDeltaEvent
    | ToolCallStartEvent
    | ToolCallDeltaEvent
    | ToolCallEvent
    | ToolResultEvent
    | ErrorEvent
    | ReconciliationEvent
    | FinishEvent,
    Field(discriminator="type"),
]

_stream_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def encode_event(event: BaseModel, charset: str = "utf-8") -> bytes:
    return (event.model_dump_json() + "\n").encode(charset)


def decode_event(line: str | bytes) -> StreamEvent:
    return _stream_event_adapter.validate_json(line)
