"""Tests for the message model and identity helpers."""

import pytest
from pydantic import ValidationError

from eva_toolkit.conversation_database.data_models.message import (
    Message,
    TextPart,
    ToolInvocation,
    ToolInvocationPart,
    ToolResult,
    remove_unfinished_tool_calls,
)
from eva_toolkit.llms.base import Roles
from eva_toolkit.utils.database import chunked, conversation_pk, generate_message_id, is_message_id

from fakes import message_id


def invocation(call_id: str, state: str) -> ToolInvocationPart:
    result = ToolResult.from_mcp({"content": [{"type": "text", "text": "ok"}]}) if state == "result" else None
    return ToolInvocationPart(
        tool_invocation=ToolInvocation(tool_call_id=call_id, tool_name="echo", state=state, result=result)
    )


def test_remove_unfinished_tool_calls_keeps_text_and_results_in_order():
    message = Message(
        id=message_id(1),
        conversation_id="c",
        role=Roles.ASSISTANT,
        parts=[
            TextPart(text="Looking it up."),
            invocation("a", "result"),
            invocation("b", "partial-call"),
            TextPart(text="Done."),
            invocation("c", "call"),
        ],
    )

    cleaned = remove_unfinished_tool_calls(message)

    assert [part.type for part in cleaned.parts] == ["text", "tool-invocation", "text"]
    assert cleaned.parts[1].tool_invocation.tool_call_id == "a"
    assert len(message.parts) == 5


def test_message_key_and_text():
    message = Message(
        id=message_id(3),
        conversation_id="c",
        role=Roles.ASSISTANT,
        parts=[TextPart(text="Hello "), invocation("a", "result"), TextPart(text="world")],
    )

    assert message.key.pk == conversation_pk("c")
    assert message.key.sk == message.id
    assert message.text == "Hello world"


def test_parts_round_trip_through_json():
    message = Message(id=message_id(1), conversation_id="c", role=Roles.ASSISTANT, parts=[invocation("a", "result")])

    restored = Message.model_validate_json(message.model_dump_json())

    assert isinstance(restored.parts[0], ToolInvocationPart)
    assert restored.parts[0].is_resolved


def test_tool_result_from_mcp_payload():
    result = ToolResult.from_mcp(
        {
            "content": [
                {"type": "text", "text": "first"},
                {"type": "image", "data": "aGVsbG8=", "mimeType": "image/png"},
                {"type": "text", "text": "second"},
            ],
            "isError": True,
        }
    )

    assert result.is_error
    assert result.content[1].mime_type == "image/png"
    assert result.text == "first\nsecond"


def test_generate_message_id_shape():
    value = generate_message_id()

    assert is_message_id(value)
    _, timestamp, uid = value.split("#")
    assert timestamp.endswith("Z")
    assert len(uid) == 36


def test_message_ids_sort_by_timestamp():
    ids = [message_id(second, suffix) for second, suffix in [(9, "a"), (10, "0"), (11, "f")]]

    assert sorted(reversed(ids)) == ids


def test_chunked():
    assert list(chunked(range(7), 3)) == [[0, 1, 2], [3, 4, 5], [6]]
    assert list(chunked([], 3)) == []
    with pytest.raises(ValueError):
        list(chunked([1], 0))


@pytest.mark.parametrize(
    "value",
    [
        "abc",
        "MESSAGE#abc",
        "MESSAGE#2025-01-01T00:00:01Z#0b6c5e2a-1f7d-4c55-9a07-4be0b5e6a0f1",
        "MESSAGE#2025-01-01T00:00:01.000000Z#not-a-uuid",
    ],
)
def test_malformed_message_ids_are_rejected(value):
    assert not is_message_id(value)
    with pytest.raises(ValidationError):
        Message(id=value, conversation_id="c", role=Roles.USER)


def test_stored_messages_keep_their_id_on_validation():
    message = Message(id=message_id(3), conversation_id="c", role=Roles.USER)

    assert Message.model_validate(message.model_dump(mode="json")).id == message_id(3)
