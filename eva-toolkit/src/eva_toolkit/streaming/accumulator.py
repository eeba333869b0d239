"""
Folds stream events into a message.

The server and the client run the same fold, so the message the server persists
and the one the client shows (and, after a failed turn, persists itself) have
the same part layout. Text following a tool call opens a new text part; tool
invocations move 'partial-call' -> 'call' -> 'result' as their events arrive.
"""

import json

from eva_toolkit.conversation_database.data_models.message import (
    Message,
    TextPart,
    ToolInvocation,
    ToolInvocationPart,
)
from eva_toolkit.streaming.events import (
    TextDeltaEvent,
    ToolCallDeltaEvent,
    ToolCallEvent,
    ToolCallStartEvent,
    ToolResultEvent,
)


class MessageAccumulator:
    def __init__(self, message: Message) -> None:
        self.message = message
        self._args_text: dict[str, str] = {}

    def _find(self, tool_call_id: str) -> ToolInvocationPart | None:
        for part in self.message.parts:
            if isinstance(part, ToolInvocationPart) and part.tool_invocation.tool_call_id == tool_call_id:
                return part
        return None

    def _get_or_add(self, tool_call_id: str, tool_name: str) -> ToolInvocationPart:
        part = self._find(tool_call_id)
        if part is None:
            part = ToolInvocationPart(tool_invocation=ToolInvocation(tool_call_id=tool_call_id, tool_name=tool_name))
            self.message.parts.append(part)
        return part

    def apply(self, event: object) -> bool:
        """Apply one event; return False for events that do not touch message content."""
        if isinstance(event, TextDeltaEvent):
            last = self.message.parts[-1] if self.message.parts else None
            if isinstance(last, TextPart):
                last.text += event.text
            else:
                self.message.parts.append(TextPart(text=event.text))
        elif isinstance(event, ToolCallStartEvent):
            self._get_or_add(event.tool_call_id, event.tool_name)
        elif isinstance(event, ToolCallDeltaEvent):
            text = self._args_text.get(event.tool_call_id, "") + event.args_text_delta
            self._args_text[event.tool_call_id] = text
            part = self._find(event.tool_call_id)
            if part is not None:
                try:
                    part.tool_invocation.args = json.loads(text)
                except ValueError:
                    pass  # arguments are still incomplete
        elif isinstance(event, ToolCallEvent):
            invocation = self._get_or_add(event.tool_call_id, event.tool_name).tool_invocation
            invocation.args = event.args
            invocation.state = "call"
        elif isinstance(event, ToolResultEvent):
            invocation = self._get_or_add(event.tool_call_id, event.tool_name).tool_invocation
            invocation.result = event.result
            invocation.state = "result"
        else:
            return False
        return True
