"""
LLM helper calls around a turn: the conversation title and follow-up suggestions.

Both are plain async callables, so the controller does not depend on how they
are produced. Failures are raised; the controller decides the fallback.
"""

import json
from collections.abc import Sequence

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from eva_backend.prompts import SUGGESTIONS_PROMPT, TITLE_PROMPT
from eva_backend.tools import TOOL_LABELS
from eva_toolkit.agents.base import to_llm_messages
from eva_toolkit.conversation_database.data_models.annotation import Suggestion
from eva_toolkit.conversation_database.data_models.message import Message
from eva_toolkit.llms.base import LLM, LLMMessage, Roles

MAX_TITLE_LENGTH = 80

_suggestions_adapter = TypeAdapter(list[Suggestion])


class TitleGenerator:
    def __init__(self, llm: LLM) -> None:
        self.llm = llm

    async def __call__(self, message: Message) -> str:
        response = await self.llm.generate(
            [
                LLMMessage(role=Roles.SYSTEM, content=TITLE_PROMPT),
                LLMMessage(role=Roles.USER, content=message.text),
            ]
        )
        title = response.content.strip().strip("\"'").replace(":", "")
        return title[:MAX_TITLE_LENGTH]


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0]
    return text.strip()


class SuggestionGenerator:
    def __init__(self, llm: LLM, tool_labels: dict[str, str] | None = None, max_suggestions: int = 3) -> None:
        self.llm = llm
        self.tool_labels = tool_labels if tool_labels is not None else TOOL_LABELS
        self.max_suggestions = max_suggestions

    async def __call__(self, messages: Sequence[Message]) -> list[Suggestion]:
        tools = "\n".join(f"- {name}: {label}" for name, label in self.tool_labels.items())
        system_prompt = SUGGESTIONS_PROMPT.format(max_suggestions=self.max_suggestions, tools=tools)
        response = await self.llm.generate(
            [
                LLMMessage(role=Roles.SYSTEM, content=system_prompt),
                *to_llm_messages(messages),
                LLMMessage(role=Roles.USER, content="Suggest the next steps."),
            ]
        )
        try:
            suggestions = _suggestions_adapter.validate_json(_strip_code_fence(response.content))
        except ValidationError as e:
            logger.warning(f"Discarding malformed suggestions: {e}")
            return []
        known = [s for s in suggestions if s.tool_name in self.tool_labels]
        logger.debug(f"Suggestions: {json.dumps([s.model_dump() for s in known])}")
        return known[: self.max_suggestions]
