"""
In-memory 'ChatDatabase'.

Items are kept in a single dict keyed by '(pk, sk)', mirroring the single-table
layout of the DynamoDB backend, and stored as JSON-mode dumps so callers never
share mutable state with the store. Range queries sort on 'sk', which is what
makes message order follow identity order exactly as it does in DynamoDB.

Intended for tests and local development.
"""

import asyncio
from collections.abc import Sequence
from typing import Any

from loguru import logger

from eva_toolkit.conversation_database.base import ChatDatabase, owner_key
from eva_toolkit.conversation_database.data_models.annotation import (
    MessageAnnotation,
    PartMetadataUpdate,
    Suggestion,
    merge_part_field,
    with_suggestions,
)
from eva_toolkit.conversation_database.data_models.conversation import Conversation
from eva_toolkit.conversation_database.data_models.message import Message, MessageKey
from eva_toolkit.conversation_database.exceptions import ConversationAlreadyExistsError, MessageNotFoundError
from eva_toolkit.utils.database import CONVERSATION_PREFIX, MESSAGE_PREFIX, conversation_pk, user_pk


class InMemoryChatDatabase(ChatDatabase):
    def __init__(self, max_batch_size: int | None = None) -> None:
        self.items: dict[tuple[str, str], dict[str, Any]] = {}
        self.deleted_batches: list[list[MessageKey]] = []
        self._lock = asyncio.Lock()
        if max_batch_size is not None:
            self.max_batch_size = max_batch_size

    def _query(self, pk: str, sk_prefix: str) -> list[dict[str, Any]]:
        return [item for (p, s), item in sorted(self.items.items()) if p == pk and s.startswith(sk_prefix)]

    async def claim_conversation(self, conversation_id: str, user_id: str) -> str | None:
        key = owner_key(conversation_id)
        async with self._lock:
            item = self.items.setdefault((key.pk, key.sk), {"user_id": user_id})
        return item["user_id"]

    async def get_conversation_owner(self, conversation_id: str) -> str | None:
        key = owner_key(conversation_id)
        item = self.items.get((key.pk, key.sk))
        return item["user_id"] if item is not None else None

    async def create_conversation(self, conversation: Conversation, exist_ok: bool = False) -> Conversation:
        await self._claim_or_raise(conversation)
        key = (conversation.pk, conversation.sk)
        async with self._lock:
            existing = self.items.get(key)
            if existing is not None:
                if not exist_ok:
                    raise ConversationAlreadyExistsError(conversation.id)
                return Conversation.model_validate(existing)
            self.items[key] = conversation.model_dump(mode="json")
        return conversation

    async def get_conversation_by_id(self, user_id: str, conversation_id: str) -> Conversation | None:
        item = self.items.get((user_pk(user_id), conversation_pk(conversation_id)))
        return Conversation.model_validate(item) if item is not None else None

    async def get_conversations_by_user_id(self, user_id: str) -> list[Conversation]:
        return [Conversation.model_validate(item) for item in self._query(user_pk(user_id), CONVERSATION_PREFIX)]

    async def create_message(self, message: Message) -> Message:
        key = (message.key.pk, message.key.sk)
        if message.annotation is None:
            message = message.model_copy(update={"annotation": MessageAnnotation()})
        async with self._lock:
            existing = self.items.get(key)
            if existing is not None:
                logger.debug(f"Message {message.id} already stored, ignoring duplicate insert")
                return Message.model_validate(existing)
            self.items[key] = message.model_dump(mode="json")
        return message

    async def get_message_by_id(self, conversation_id: str, message_id: str) -> Message | None:
        item = self.items.get((conversation_pk(conversation_id), message_id))
        return Message.model_validate(item) if item is not None else None

    async def get_messages_by_conversation_id(self, conversation_id: str) -> list[Message]:
        return [Message.model_validate(item) for item in self._query(conversation_pk(conversation_id), MESSAGE_PREFIX)]

    async def get_message_keys_by_conversation_id(self, conversation_id: str) -> list[MessageKey]:
        pk = conversation_pk(conversation_id)
        return [MessageKey(pk=pk, sk=item["id"]) for item in self._query(pk, MESSAGE_PREFIX)]

    async def _update_annotation(self, conversation_id: str, message_id: str, update: Any) -> None:
        key = (conversation_pk(conversation_id), message_id)
        async with self._lock:
            item = self.items.get(key)
            if item is None:
                raise MessageNotFoundError(conversation_id, message_id)
            annotation = MessageAnnotation.model_validate(item["annotation"]) if item.get("annotation") else None
            item["annotation"] = update(annotation).model_dump(mode="json")

    async def update_message_part(
        self,
        conversation_id: str,
        message_id: str,
        part_idx: int,
        updates: PartMetadataUpdate,
    ) -> None:
        await self._update_annotation(
            conversation_id, message_id, lambda annotation: merge_part_field(annotation, part_idx, updates)
        )

    async def attach_suggestions(self, conversation_id: str, message_id: str, suggestions: list[Suggestion]) -> None:
        await self._update_annotation(
            conversation_id, message_id, lambda annotation: with_suggestions(annotation, suggestions)
        )

    async def delete_batch(self, keys: Sequence[MessageKey]) -> list[MessageKey]:
        if len(keys) > self.max_batch_size:
            raise ValueError(f"Batch of {len(keys)} exceeds the limit of {self.max_batch_size}")
        async with self._lock:
            self.deleted_batches.append(list(keys))
            for key in keys:
                self.items.pop((key.pk, key.sk), None)
        return []
