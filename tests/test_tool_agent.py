"""Tests for the tool-calling agent loop."""

import pytest

from eva_toolkit.agents.base import QueryWithContext, to_llm_messages
from eva_toolkit.agents.tool_agent import ToolAgent
from eva_toolkit.conversation_database.data_models.message import (
    Message,
    TextPart,
    ToolInvocation,
    ToolInvocationPart,
    ToolResult,
)
from eva_toolkit.llms.base import Function, LLMError, LLMMessage, Roles, ToolCall, ToolCallDelta
from eva_toolkit.streaming.events import (
    TextDeltaEvent,
    ToolCallDeltaEvent,
    ToolCallEvent,
    ToolCallStartEvent,
    ToolResultEvent,
)

from fakes import EchoTool, FailingTool, ScriptedLLM, message_id


def tool_call_step(name: str, arguments: str, call_id: str = "call_1") -> list[LLMMessage]:
    return [
        LLMMessage(tool_call_deltas=[ToolCallDelta(index=0, id=call_id, name=name, arguments=arguments)]),
        LLMMessage(tool_calls=[ToolCall(id=call_id, function=Function(name=name, arguments=arguments))]),
    ]


async def collect(agent: ToolAgent, query: str = "hi") -> list:
    return [event async for event in agent.answer_stream(QueryWithContext(query=query))]


@pytest.mark.asyncio
async def test_text_only_answer():
    llm = ScriptedLLM(steps=[[LLMMessage(content="Hello"), LLMMessage(content=" world")]])
    agent = ToolAgent(system_prompt="sys", llm=llm)

    events = await collect(agent)

    assert events == [TextDeltaEvent(text="Hello"), TextDeltaEvent(text=" world")]
    assert llm.calls[0][0].role == Roles.SYSTEM
    assert llm.calls[0][-1].content == "hi"


@pytest.mark.asyncio
async def test_tool_call_round_trip():
    llm = ScriptedLLM(steps=[tool_call_step("echo", '{"text": "ping"}'), [LLMMessage(content="Done.")]])
    agent = ToolAgent(system_prompt="sys", llm=llm).bind_tools([EchoTool()])

    events = await collect(agent)

    assert [type(e) for e in events] == [
        ToolCallStartEvent,
        ToolCallDeltaEvent,
        ToolCallEvent,
        ToolResultEvent,
        TextDeltaEvent,
    ]
    assert events[2].args == {"text": "ping"}
    assert events[3].result.text == "ping"
    assert not events[3].result.is_error
    second_call = llm.calls[1]
    assert second_call[-2].tool_calls[0].id == "call_1"
    assert second_call[-1].role == Roles.TOOL
    assert second_call[-1].content == "ping"


@pytest.mark.asyncio
async def test_unknown_tool_becomes_error_result():
    llm = ScriptedLLM(steps=[tool_call_step("missing", "{}"), [LLMMessage(content="Sorry.")]])
    agent = ToolAgent(system_prompt="sys", llm=llm).bind_tools([EchoTool()])

    events = await collect(agent)

    result = next(e for e in events if isinstance(e, ToolResultEvent))
    assert result.result.is_error
    assert "not available" in result.result.text


@pytest.mark.asyncio
async def test_failing_tool_becomes_error_result():
    llm = ScriptedLLM(steps=[tool_call_step("broken", "{}"), [LLMMessage(content="It failed.")]])
    agent = ToolAgent(system_prompt="sys", llm=llm).bind_tools([FailingTool()])

    events = await collect(agent)

    result = next(e for e in events if isinstance(e, ToolResultEvent))
    assert result.result.is_error
    assert "backend unavailable" in result.result.text
    assert events[-1] == TextDeltaEvent(text="It failed.")


@pytest.mark.asyncio
async def test_invalid_arguments_become_error_result():
    llm = ScriptedLLM(steps=[tool_call_step("echo", "not json"), [LLMMessage(content="Oops.")]])
    agent = ToolAgent(system_prompt="sys", llm=llm).bind_tools([EchoTool()])

    events = await collect(agent)

    call = next(e for e in events if isinstance(e, ToolCallEvent))
    result = next(e for e in events if isinstance(e, ToolResultEvent))
    assert call.args == {}
    assert result.result.is_error


@pytest.mark.asyncio
async def test_loop_stops_after_max_steps():
    llm = ScriptedLLM(steps=[tool_call_step("echo", '{"text": "x"}', f"call_{i}") for i in range(2)])
    agent = ToolAgent(system_prompt="sys", llm=llm, max_steps=2).bind_tools([EchoTool()])

    events = await collect(agent)

    assert len([e for e in events if isinstance(e, ToolResultEvent)]) == 2
    assert len(llm.calls) == 2


@pytest.mark.asyncio
async def test_model_errors_propagate():
    agent = ToolAgent(system_prompt="sys", llm=ScriptedLLM(steps=[LLMError("down")]))

    with pytest.raises(LLMError):
        await collect(agent)


def test_bind_tools_does_not_change_the_original():
    agent = ToolAgent(system_prompt="sys", llm=ScriptedLLM())

    bound = agent.bind_tools([EchoTool()])

    assert [t.name for t in bound.llm.tools] == ["echo"]
    assert agent.llm.tools == []


def test_history_replays_resolved_tool_invocations():
    resolved = ToolInvocationPart(
        tool_invocation=ToolInvocation(
            tool_call_id="call_1",
            tool_name="echo",
            args={"text": "a"},
            state="result",
            result=ToolResult.from_mcp({"content": [{"type": "text", "text": "a"}]}),
        )
    )
    history = [
        Message(id=message_id(1), conversation_id="c", role=Roles.USER, parts=[TextPart(text="echo a")]),
        Message(
            id=message_id(2),
            conversation_id="c",
            role=Roles.ASSISTANT,
            parts=[TextPart(text="Calling. "), resolved, TextPart(text="Done.")],
        ),
    ]

    messages = to_llm_messages(history)

    assert [m.role for m in messages] == [Roles.USER, Roles.ASSISTANT, Roles.TOOL, Roles.ASSISTANT]
    assert messages[1].content == "Calling. "
    assert messages[1].tool_calls[0].function.name == "echo"
    assert messages[2].content == "a"
    assert messages[3].content == "Done."
