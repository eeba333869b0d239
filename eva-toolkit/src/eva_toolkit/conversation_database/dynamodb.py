"""
DynamoDB 'ChatDatabase' on a single table with 'PK' / 'SK' string keys.

Idempotent inserts use a conditional put ('attribute_not_exists'); a failed
condition means the record is already there and is answered with the stored
item. Annotation updates are 'SET' expressions on nested paths of the
'annotation' map, so two updates touching different parts (or different fields
of the same part) never overwrite each other. Concurrent writes to the same
field are last-writer-wins; there is no version check.

boto3 is synchronous, so every call runs in a worker thread.
"""

import asyncio
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from loguru import logger

from eva_toolkit.conversation_database.base import ChatDatabase, owner_key
from eva_toolkit.conversation_database.data_models.annotation import (
    MessageAnnotation,
    PartMetadataUpdate,
    Suggestion,
    part_key,
)
from eva_toolkit.conversation_database.data_models.conversation import Conversation
from eva_toolkit.conversation_database.data_models.message import Message, MessageKey
from eva_toolkit.conversation_database.exceptions import ConversationAlreadyExistsError, MessageNotFoundError
from eva_toolkit.utils.database import CONVERSATION_PREFIX, MESSAGE_PREFIX, conversation_pk, user_pk

CONDITION_NOT_EXISTS = "attribute_not_exists(PK) AND attribute_not_exists(SK)"
CONDITION_EXISTS = "attribute_exists(PK) AND attribute_exists(SK)"


def to_dynamo(value: Any) -> Any:
    """DynamoDB rejects floats; numbers go in as 'Decimal'."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_dynamo(v) for v in value]
    return value


def from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    return value


def to_record(item: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in from_dynamo(item).items() if k not in ("PK", "SK")}


def _is_condition_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DynamoDBChatDatabase(ChatDatabase):
    def __init__(
        self,
        table_name: str = "Chat",
        region_name: str | None = None,
        resource: Any | None = None,
        max_unprocessed_retries: int = 3,
    ) -> None:
        self.table_name = table_name
        self.resource = resource or boto3.resource("dynamodb", region_name=region_name)
        self.table = self.resource.Table(table_name)
        self.max_unprocessed_retries = max_unprocessed_retries

    async def _get_item(self, pk: str, sk: str) -> dict[str, Any] | None:
        response = await asyncio.to_thread(self.table.get_item, Key={"PK": pk, "SK": sk})
        item = response.get("Item")
        return to_record(item) if item is not None else None

    async def _put_if_absent(self, pk: str, sk: str, payload: dict[str, Any]) -> bool:
        """Return False when an item with this key already exists."""
        item = {"PK": pk, "SK": sk, **to_dynamo(payload)}
        try:
            await asyncio.to_thread(self.table.put_item, Item=item, ConditionExpression=CONDITION_NOT_EXISTS)
        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise
        return True

    async def _query(self, pk: str, sk_prefix: str, keys_only: bool = False) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": Key("PK").eq(pk) & Key("SK").begins_with(sk_prefix),
            "ScanIndexForward": True,
        }
        if keys_only:
            kwargs["ProjectionExpression"] = "PK, SK"

        items: list[dict[str, Any]] = []
        while True:
            response = await asyncio.to_thread(self.table.query, **kwargs)
            items += response.get("Items", [])
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    async def claim_conversation(self, conversation_id: str, user_id: str) -> str | None:
        key = owner_key(conversation_id)
        if await self._put_if_absent(key.pk, key.sk, {"user_id": user_id}):
            return user_id
        return await self.get_conversation_owner(conversation_id)

    async def get_conversation_owner(self, conversation_id: str) -> str | None:
        key = owner_key(conversation_id)
        item = await self._get_item(key.pk, key.sk)
        return item["user_id"] if item is not None else None

    async def create_conversation(self, conversation: Conversation, exist_ok: bool = False) -> Conversation:
        await self._claim_or_raise(conversation)
        if await self._put_if_absent(conversation.pk, conversation.sk, conversation.model_dump(mode="json")):
            return conversation
        if not exist_ok:
            raise ConversationAlreadyExistsError(conversation.id)
        existing = await self._get_item(conversation.pk, conversation.sk)
        return Conversation.model_validate(existing) if existing is not None else conversation

    async def get_conversation_by_id(self, user_id: str, conversation_id: str) -> Conversation | None:
        item = await self._get_item(user_pk(user_id), conversation_pk(conversation_id))
        return Conversation.model_validate(item) if item is not None else None

    async def get_conversations_by_user_id(self, user_id: str) -> list[Conversation]:
        items = await self._query(user_pk(user_id), CONVERSATION_PREFIX)
        return [Conversation.model_validate(to_record(item)) for item in items]

    async def create_message(self, message: Message) -> Message:
        if message.annotation is None:
            message = message.model_copy(update={"annotation": MessageAnnotation()})
        key = message.key
        if await self._put_if_absent(key.pk, key.sk, message.model_dump(mode="json")):
            return message
        logger.debug(f"Message {message.id} already stored, ignoring duplicate insert")
        existing = await self._get_item(key.pk, key.sk)
        return Message.model_validate(existing) if existing is not None else message

    async def get_message_by_id(self, conversation_id: str, message_id: str) -> Message | None:
        item = await self._get_item(conversation_pk(conversation_id), message_id)
        return Message.model_validate(item) if item is not None else None

    async def get_messages_by_conversation_id(self, conversation_id: str) -> list[Message]:
        items = await self._query(conversation_pk(conversation_id), MESSAGE_PREFIX)
        return [Message.model_validate(to_record(item)) for item in items]

    async def get_message_keys_by_conversation_id(self, conversation_id: str) -> list[MessageKey]:
        items = await self._query(conversation_pk(conversation_id), MESSAGE_PREFIX, keys_only=True)
        return [MessageKey(pk=item["PK"], sk=item["SK"]) for item in items]

    async def _update(self, conversation_id: str, message_id: str, **kwargs: Any) -> None:
        try:
            await asyncio.to_thread(
                self.table.update_item,
                Key={"PK": conversation_pk(conversation_id), "SK": message_id},
                ConditionExpression=CONDITION_EXISTS,
                **kwargs,
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise MessageNotFoundError(conversation_id, message_id) from e
            raise

    async def update_message_part(
        self,
        conversation_id: str,
        message_id: str,
        part_idx: int,
        updates: PartMetadataUpdate,
    ) -> None:
        fields = updates.fields()
        names = {"#annotation": "annotation", "#parts": "parts", "#part": part_key(part_idx)}
        # A nested SET needs its parent map to exist, and one expression cannot touch
        # a path and its child, so the part map is created first.
        await self._update(
            conversation_id,
            message_id,
            UpdateExpression="SET #annotation.#parts.#part = if_not_exists(#annotation.#parts.#part, :empty)",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues={":empty": {}},
        )
        if not fields:
            return

        assignments = []
        values = {}
        for i, (field, value) in enumerate(fields.items()):
            names[f"#f{i}"] = field
            values[f":v{i}"] = to_dynamo(value)
            assignments.append(f"#annotation.#parts.#part.#f{i} = :v{i}")
        await self._update(
            conversation_id,
            message_id,
            UpdateExpression="SET " + ", ".join(assignments),
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )

    async def attach_suggestions(self, conversation_id: str, message_id: str, suggestions: list[Suggestion]) -> None:
        await self._update(
            conversation_id,
            message_id,
            UpdateExpression="SET #annotation.#suggestions = :suggestions",
            ExpressionAttributeNames={"#annotation": "annotation", "#suggestions": "suggestions"},
            ExpressionAttributeValues={":suggestions": [s.model_dump(mode="json") for s in suggestions]},
        )

    async def delete_batch(self, keys: Sequence[MessageKey]) -> list[MessageKey]:
        if len(keys) > self.max_batch_size:
            raise ValueError(f"Batch of {len(keys)} exceeds the limit of {self.max_batch_size}")
        requests = [{"DeleteRequest": {"Key": {"PK": key.pk, "SK": key.sk}}} for key in keys]

        for attempt in range(self.max_unprocessed_retries + 1):
            response = await asyncio.to_thread(
                self.resource.batch_write_item, RequestItems={self.table_name: requests}
            )
            requests = response.get("UnprocessedItems", {}).get(self.table_name, [])
            if not requests:
                return []
            await asyncio.sleep(min(0.05 * 2**attempt, 1.0))

        logger.warning(f"{len(requests)} item(s) left unprocessed after {self.max_unprocessed_retries} retries")
        return [MessageKey(pk=r["DeleteRequest"]["Key"]["PK"], sk=r["DeleteRequest"]["Key"]["SK"]) for r in requests]
