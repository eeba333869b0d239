"""
Chat storage interface.

'ChatDatabase' is the pluggable storage backend for conversations and messages.
Both live in one two-level keyspace:

    conversations  pk='USER#<owner>'              sk='CONVERSATION#<id>'
    messages       pk='CONVERSATION#<id>'         sk='MESSAGE#<iso>#<uuid>'
    owner          pk='CONVERSATION#<id>'         sk='OWNER'

Because message sort keys order by creation time, "all messages of a
conversation, oldest first" is a single ordered range query.

Messages are partitioned by conversation id alone, so each id has exactly one
owner. The first 'create_conversation' for an id claims it with a conditional
write of the owner item; creating the same id for another user raises
'ConversationOwnershipError'.

Write semantics every backend must honour:

- 'create_message' is an idempotent append. Re-inserting an existing key
  returns the stored record instead of failing, so a retried or duplicated
  save (client retry, server and client both finalising the same turn)
  produces exactly one record.
- 'update_message_part' and 'attach_suggestions' are targeted field updates on
  the annotation sidecar. They never replace the whole sidecar, and they raise
  'MessageNotFoundError' when the message does not exist.
- Deleting a conversation goes through bounded-size batches (DynamoDB caps a
  batch at 25 items). A failed batch does not stop the remaining ones; failures
  are reported at the end as 'PartialDeletionError'.

Concrete implementations: 'InMemoryChatDatabase', 'DynamoDBChatDatabase'.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence

from loguru import logger

from eva_toolkit.conversation_database.data_models.annotation import PartMetadataUpdate, Suggestion
from eva_toolkit.conversation_database.data_models.conversation import Conversation
from eva_toolkit.conversation_database.data_models.message import Message, MessageKey
from eva_toolkit.conversation_database.exceptions import ConversationOwnershipError, PartialDeletionError
from eva_toolkit.utils.database import OWNER_SK, chunked, conversation_pk, user_pk

MAX_BATCH_SIZE = 25


def owner_key(conversation_id: str) -> MessageKey:
    return MessageKey(pk=conversation_pk(conversation_id), sk=OWNER_SK)


class ChatDatabase(ABC):
    """Abstract repository for 'Conversation' and 'Message' records."""

    max_batch_size: int = MAX_BATCH_SIZE

    @abstractmethod
    async def claim_conversation(self, conversation_id: str, user_id: str) -> str | None:
        """Record 'user_id' as owner unless the id is already owned; return the recorded owner."""
        pass

    @abstractmethod
    async def get_conversation_owner(self, conversation_id: str) -> str | None:
        pass

    async def _claim_or_raise(self, conversation: Conversation) -> None:
        owner = await self.claim_conversation(conversation.id, conversation.user_id)
        if owner != conversation.user_id:
            logger.warning(f"User {conversation.user_id} tried to create conversation {conversation.id} of another user")
            raise ConversationOwnershipError(conversation.id)

    @abstractmethod
    async def create_conversation(self, conversation: Conversation, exist_ok: bool = False) -> Conversation:
        """Insert a conversation.

        Raises 'ConversationOwnershipError' when another user owns the id, and
        'ConversationAlreadyExistsError' on an identity collision unless
        'exist_ok' is set, in which case the stored record is returned unchanged.
        """
        pass

    @abstractmethod
    async def get_conversation_by_id(self, user_id: str, conversation_id: str) -> Conversation | None:
        pass

    @abstractmethod
    async def get_conversations_by_user_id(self, user_id: str) -> list[Conversation]:
        pass

    @abstractmethod
    async def create_message(self, message: Message) -> Message:
        """Idempotent append keyed by (conversation id, message id)."""
        pass

    @abstractmethod
    async def get_message_by_id(self, conversation_id: str, message_id: str) -> Message | None:
        pass

    @abstractmethod
    async def get_messages_by_conversation_id(self, conversation_id: str) -> list[Message]:
        """Messages of a conversation in ascending creation order."""
        pass

    @abstractmethod
    async def get_message_keys_by_conversation_id(self, conversation_id: str) -> list[MessageKey]:
        """Like 'get_messages_by_conversation_id' but only the storage keys."""
        pass

    async def list_messages(self, conversation_id: str, keys_only: bool = False) -> list[Message] | list[MessageKey]:
        if keys_only:
            return await self.get_message_keys_by_conversation_id(conversation_id)
        return await self.get_messages_by_conversation_id(conversation_id)

    @abstractmethod
    async def update_message_part(
        self,
        conversation_id: str,
        message_id: str,
        part_idx: int,
        updates: PartMetadataUpdate,
    ) -> None:
        pass

    @abstractmethod
    async def attach_suggestions(self, conversation_id: str, message_id: str, suggestions: list[Suggestion]) -> None:
        pass

    @abstractmethod
    async def delete_batch(self, keys: Sequence[MessageKey]) -> list[MessageKey]:
        """Delete at most 'max_batch_size' items and return the keys that could not be deleted."""
        pass

    async def delete_conversation(self, user_id: str, conversation_id: str) -> None:
        """Delete every message of a conversation, then its owner item and the conversation record itself."""
        keys = await self.get_message_keys_by_conversation_id(conversation_id)
        message_count = len(keys)
        keys.append(owner_key(conversation_id))
        keys.append(MessageKey(pk=user_pk(user_id), sk=conversation_pk(conversation_id)))

        failed: list[MessageKey] = []
        for batch in chunked(keys, self.max_batch_size):
            try:
                failed += await self.delete_batch(batch)
            except Exception as e:
                logger.warning(f"Delete batch of {len(batch)} item(s) failed for conversation {conversation_id}: {e}")
                failed += batch

        if failed:
            raise PartialDeletionError(failed)
        logger.info(f"Deleted conversation {conversation_id} ({message_count} message(s))")
