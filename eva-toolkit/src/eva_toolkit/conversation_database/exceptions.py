"""Errors raised by 'ChatDatabase' implementations."""

from collections.abc import Sequence

from eva_toolkit.conversation_database.data_models.message import MessageKey


class ChatDatabaseError(Exception):
    """Base class for storage errors."""


class ConversationAlreadyExistsError(ChatDatabaseError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} already exists")
        self.conversation_id = conversation_id


class MessageNotFoundError(ChatDatabaseError):
    """An annotation update targeted a message that was never persisted."""

    def __init__(self, conversation_id: str, message_id: str) -> None:
        super().__init__(f"Message {message_id} not found in conversation {conversation_id}")
        self.conversation_id = conversation_id
        self.message_id = message_id


class PartialDeletionError(ChatDatabaseError):
    """Some delete batches failed; the remaining batches were still attempted."""

    def __init__(self, failed_keys: Sequence[MessageKey]) -> None:
        super().__init__(f"{len(failed_keys)} item(s) could not be deleted")
        self.failed_keys = list(failed_keys)


class ConversationNotFoundError(ChatDatabaseError):
    """The conversation does not exist or belongs to another user."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class ConversationOwnershipError(ConversationNotFoundError):
    """The conversation id is already taken by another user; reported as not found."""
