"""
Conversation data model.

A conversation is owned by a user and stored under that user's partition, so
listing a user's conversations for the sidebar is a single range query. Title
and metadata are written once, when the conversation is created.
"""

from pydantic import BaseModel, Field

from eva_toolkit.utils.database import conversation_pk, user_pk
from eva_toolkit.utils.time import get_current_timestamp

DEFAULT_CONVERSATION_TITLE = "Untitled conversation"


class ConversationMetadata(BaseModel):
    """Domain filters chosen when the conversation was started."""

    diseases: list[str] = Field(default_factory=list)
    samples: list[str] = Field(default_factory=list)


class Conversation(BaseModel):
    """A single conversation session owned by a user."""

    id: str
    user_id: str
    title: str = DEFAULT_CONVERSATION_TITLE
    create_timestamp: int = Field(default_factory=get_current_timestamp)
    metadata: ConversationMetadata | None = None

    @property
    def pk(self) -> str:
        return user_pk(self.user_id)

    @property
    def sk(self) -> str:
        return conversation_pk(self.id)
