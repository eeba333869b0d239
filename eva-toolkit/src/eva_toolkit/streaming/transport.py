"""
Client transport for the chat API.

'ChatTransport' is everything the 'StreamingReconciler' needs from the server:
the turn stream and the three conversation-scoped writes/reads used for
compensation and annotation updates. 'HttpChatTransport' talks to the FastAPI
app over httpx and parses the NDJSON stream line by line.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from urllib.parse import quote

import httpx
from loguru import logger

from eva_toolkit.conversation_database.controller import TurnRequest
from eva_toolkit.conversation_database.data_models.annotation import PartMetadataUpdate
from eva_toolkit.conversation_database.data_models.message import Message, MessageKey
from eva_toolkit.streaming.events import StreamEvent, decode_event


class ChatTransport(ABC):
    @abstractmethod
    def stream_turn(self, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        pass

    @abstractmethod
    async def list_message_keys(self, conversation_id: str) -> list[MessageKey]:
        pass

    @abstractmethod
    async def save_message(self, conversation_id: str, message: Message) -> Message:
        pass

    @abstractmethod
    async def update_message_part(
        self, conversation_id: str, message_id: str, part_idx: int, updates: PartMetadataUpdate
    ) -> None:
        pass


def _segment(value: str) -> str:
    # message ids contain '#'
    return quote(value, safe="")


class HttpChatTransport(ChatTransport):
    def __init__(
        self,
        base_url: str = "",
        user_id: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 180.0,
        user_header: str = "X-User-Id",
    ) -> None:
        headers = {user_header: user_id} if user_id else {}
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.client.headers.update(headers)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def stream_turn(self, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        payload = request.model_dump(mode="json")
        async with self.client.stream("POST", "/api/chat", json=payload) as response:
            if response.is_error:
                await response.aread()
                logger.warning(f"Chat request failed with {response.status_code}: {response.text}")
                response.raise_for_status()
            async for line in response.aiter_lines():
                if line.strip():
                    yield decode_event(line)

    async def list_message_keys(self, conversation_id: str) -> list[MessageKey]:
        response = await self.client.get(
            f"/api/conversations/{_segment(conversation_id)}/messages", params={"keys_only": "true"}
        )
        response.raise_for_status()
        return [MessageKey.model_validate(item) for item in response.json()]

    async def save_message(self, conversation_id: str, message: Message) -> Message:
        response = await self.client.post(
            f"/api/conversations/{_segment(conversation_id)}/messages", json=message.model_dump(mode="json")
        )
        response.raise_for_status()
        return Message.model_validate(response.json())

    async def update_message_part(
        self, conversation_id: str, message_id: str, part_idx: int, updates: PartMetadataUpdate
    ) -> None:
        response = await self.client.patch(
            f"/api/conversations/{_segment(conversation_id)}/messages/{_segment(message_id)}/parts/{part_idx}",
            json=updates.model_dump(mode="json", exclude_none=True),
        )
        response.raise_for_status()
