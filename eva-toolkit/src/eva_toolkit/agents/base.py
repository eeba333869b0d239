"""
Agent abstractions.

An agent turns a query plus conversation history into a stream of agent events
(text deltas and tool-call lifecycle events, see 'streaming.events'). The
controller owns everything around that stream: persistence, the deadline, and
framing the events for the client.

Failures of the model call surface as 'LLMError' subclasses raised out of
'answer_stream'. Failures of an individual tool do not: they are turned into a
tool result with 'is_error=True' and the turn carries on.

History is stored as 'Message' objects with typed parts; 'to_llm_messages'
flattens them into the role-based format the LLM backends accept, replaying
resolved tool invocations as assistant tool calls followed by their tool
results.
"""

import copy
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Sequence

from pydantic import BaseModel

from eva_toolkit.conversation_database.data_models.message import Message, TextPart, ToolInvocationPart
from eva_toolkit.llms.base import LLM, Function, LLMMessage, Roles, ToolCall
from eva_toolkit.streaming.events import AgentEvent
from eva_toolkit.tools.base import Tool


class QueryWithContext(BaseModel):
    query: str
    history: list[LLMMessage] = []


class Agent(ABC):
    def __init__(self, system_prompt: str, llm: LLM, description: str = "", max_steps: int = 5) -> None:
        self.system_prompt = system_prompt
        self.llm = llm
        self.description = description
        self.max_steps = max_steps

    def bind_tools(self, tools: list[Tool]) -> "Agent":
        """Return a copy of this agent whose LLM can call 'tools'."""
        clone = copy.copy(self)
        clone.llm = self.llm.with_tools(tools)
        return clone

    @abstractmethod
    def answer_stream(self, query_with_context: QueryWithContext) -> AsyncGenerator[AgentEvent, None]:
        pass

    @staticmethod
    def build_tool_answer(tool_call_id: str, tool_name: str, content: str) -> LLMMessage:
        return LLMMessage(role=Roles.TOOL, content=content, tool_call_id=tool_call_id, name=tool_name)


def to_llm_messages(messages: Sequence[Message]) -> list[LLMMessage]:
    llm_messages: list[LLMMessage] = []
    for message in messages:
        if message.role == Roles.USER:
            llm_messages.append(LLMMessage(role=Roles.USER, content=message.text))
            continue

        text = ""
        for part in message.parts:
            if isinstance(part, TextPart):
                text += part.text
            elif isinstance(part, ToolInvocationPart) and part.is_resolved:
                invocation = part.tool_invocation
                llm_messages.append(
                    LLMMessage(
                        role=Roles.ASSISTANT,
                        content=text,
                        tool_calls=[
                            ToolCall(
                                id=invocation.tool_call_id,
                                function=Function(name=invocation.tool_name, arguments=json.dumps(invocation.args)),
                            )
                        ],
                    )
                )
                result_text = invocation.result.text if invocation.result else ""
                llm_messages.append(Agent.build_tool_answer(invocation.tool_call_id, invocation.tool_name, result_text))
                text = ""
        if text:
            llm_messages.append(LLMMessage(role=Roles.ASSISTANT, content=text))
    return llm_messages
