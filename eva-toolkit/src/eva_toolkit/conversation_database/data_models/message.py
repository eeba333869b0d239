"""
Message data model.

A message is an ordered list of parts: plain text, or a tool invocation that
moves through 'partial-call' (arguments still streaming), 'call' (arguments
complete, tool running) and 'result' (the tool answered, possibly with an error
payload). Parts are append-only once persisted; user-derived state goes in the
'annotation' sidecar instead (see 'annotation.py').

Message identities sort in creation order ('MESSAGE#<iso timestamp>#<uuid>') and
are generated once, by whichever side creates the message first. The same
identity is used for the insert and for every later annotation update.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator

from eva_toolkit.conversation_database.data_models.annotation import MessageAnnotation
from eva_toolkit.llms.base import Roles
from eva_toolkit.utils.database import conversation_pk, is_message_id
from eva_toolkit.utils.time import get_current_timestamp

ToolInvocationState = Literal["partial-call", "call", "result"]


class ToolResultContent(BaseModel):
    """
    One content block of a tool result, in MCP shape.

    Images arrive inline ('data', base64) and are swapped for an object-store
    reference ('object_key') before the message is streamed or stored.
    """

    type: Literal["text", "image"] = "text"
    text: str | None = None
    data: str | None = None
    mime_type: str | None = None
    object_key: str | None = None


class ToolResult(BaseModel):
    content: list[ToolResultContent] = Field(default_factory=list)
    is_error: bool = False

    @classmethod
    def from_mcp(cls, payload: dict[str, Any]) -> "ToolResult":
        return cls(
            content=[
                ToolResultContent(
                    type="image" if block.get("type") == "image" else "text",
                    text=block.get("text"),
                    data=block.get("data"),
                    mime_type=block.get("mimeType") or block.get("mime_type"),
                )
                for block in payload.get("content", [])
            ],
            is_error=bool(payload.get("isError", payload.get("is_error", False))),
        )

    @property
    def text(self) -> str:
        return "\n".join(block.text for block in self.content if block.type == "text" and block.text)


class ToolInvocation(BaseModel):
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    state: ToolInvocationState = "partial-call"
    result: ToolResult | None = None


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ToolInvocationPart(BaseModel):
    type: Literal["tool-invocation"] = "tool-invocation"
    tool_invocation: ToolInvocation

    @property
    def is_resolved(self) -> bool:
        return self.tool_invocation.state == "result"


Part = Annotated[TextPart | ToolInvocationPart, Field(discriminator="type")]


class MessageKey(BaseModel):
    """Storage identity of a message: partition by conversation, sort by message id."""

    pk: str
    sk: str


class Message(BaseModel):
    """
    A single message within a conversation.

    'annotation' is None until the message has been persisted; the store fills in
    an empty annotation on insert so later targeted updates always have a sidecar
    to merge into.
    """

    id: str
    conversation_id: str
    role: Roles
    parts: list[Part] = Field(default_factory=list)
    create_timestamp: int = Field(default_factory=get_current_timestamp)
    annotation: MessageAnnotation | None = None

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        # message listings are range queries over this shape
        if not is_message_id(value):
            raise ValueError(f"Invalid message id {value!r}, expected 'MESSAGE#<iso timestamp>#<uuid>'")
        return value

    @property
    def key(self) -> MessageKey:
        return MessageKey(pk=conversation_pk(self.conversation_id), sk=self.id)

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))


def remove_unfinished_tool_calls(message: Message) -> Message:
    """Return a copy of 'message' without tool invocations that never reached a result."""
    parts = [part for part in message.parts if not isinstance(part, ToolInvocationPart) or part.is_resolved]
    return message.model_copy(update={"parts": parts})
