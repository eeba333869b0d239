"""
Agent that answers by alternating model steps and tool calls.

'ToolAgent' lets the model call any tool bound to 'self.llm.tools'. While the
model streams, text deltas and tool-call fragments are forwarded as they
arrive. Once a step ends, every complete tool call is executed, its result is
emitted as a 'tool-result' event and appended to the conversation, and the
model is called again. The loop ends when the model answers without tool calls
or after 'max_steps' steps.

A tool that raises, or that the model names but that is not available in this
turn, produces an error result rather than failing the turn: the user sees the
error inline and the message is still persisted.
"""

import json
from collections.abc import AsyncGenerator
from typing import Any

from loguru import logger

from eva_toolkit.agents.base import Agent, QueryWithContext
from eva_toolkit.conversation_database.data_models.message import ToolResult
from eva_toolkit.llms.base import LLMMessage, Roles, ToolCall
from eva_toolkit.streaming.events import (
    AgentEvent,
    TextDeltaEvent,
    ToolCallDeltaEvent,
    ToolCallEvent,
    ToolCallStartEvent,
    ToolResultEvent,
)
from eva_toolkit.tools.base import error_result


class ToolAgent(Agent):
    """
    Tool-calling loop over a streaming model.

    The tools live on 'self.llm', next to the client that advertises them. Use 'bind_tools' to get a
    copy of the agent for the tool set of a single turn.
    """

    async def _call_tool(self, tool_call: ToolCall, args: dict[str, Any] | None) -> dict[str, Any]:
        available_functions = {tool.name: tool.call for tool in self.llm.tools} if self.llm.tools else {}
        function_name = tool_call.function.name
        if args is None:
            return error_result(f"Error: invalid arguments for {function_name}: {tool_call.function.arguments}")
        function_to_call = available_functions.get(function_name)
        if function_to_call is None:
            return error_result(f"Error: tool {function_name} is not available")
        try:
            return await function_to_call(args)
        except Exception as e:
            logger.warning(f"Tool {function_name} raised: {e}")
            return error_result(f"Error: {function_name} failed: {e}")

    async def answer_stream(self, query_with_context: QueryWithContext) -> AsyncGenerator[AgentEvent, None]:
        steps = []
        messages = [
            LLMMessage(role=Roles.SYSTEM, content=self.system_prompt),
            *query_with_context.history,
            LLMMessage(role=Roles.USER, content=query_with_context.query),
        ]

        for _ in range(self.max_steps):
            tool_calls: list[ToolCall] = []
            started: dict[int, str] = {}
            content = ""
            async for response_chunk in self.llm.generate_stream(messages):
                if response_chunk.content:
                    content += response_chunk.content
                    yield TextDeltaEvent(text=response_chunk.content)
                for delta in response_chunk.tool_call_deltas or []:
                    if delta.index not in started and delta.id:
                        started[delta.index] = delta.id
                        yield ToolCallStartEvent(tool_call_id=delta.id, tool_name=delta.name or "")
                    if delta.arguments and delta.index in started:
                        yield ToolCallDeltaEvent(tool_call_id=started[delta.index], args_text_delta=delta.arguments)
                if response_chunk.tool_calls:
                    tool_calls += response_chunk.tool_calls

            steps.append({"content": content, "tool_calls": [c.function.name for c in tool_calls]})
            messages.append(LLMMessage(role=Roles.ASSISTANT, content=content, tool_calls=tool_calls or None))

            if not tool_calls:
                break

            for tool_call in tool_calls:
                function_name = tool_call.function.name
                try:
                    args = json.loads(tool_call.function.arguments or "{}")
                except ValueError:
                    args = None
                if not isinstance(args, dict):
                    args = None
                yield ToolCallEvent(tool_call_id=tool_call.id, tool_name=function_name, args=args or {})

                result = ToolResult.from_mcp(await self._call_tool(tool_call, args))
                yield ToolResultEvent(tool_call_id=tool_call.id, tool_name=function_name, result=result)
                messages.append(self.build_tool_answer(tool_call.id, function_name, result.text))
        else:
            logger.info(f"Stopped after {self.max_steps} step(s)")

        logger.debug(steps)
