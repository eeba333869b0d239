"""
Object storage for binary tool outputs.

Tools that produce figures return them inline; the controller uploads each
image under the conversation's namespace and keeps only the object key in the
message. Rendering asks for a short-lived signed URL per key. Deleting a
conversation removes everything under its prefix, best effort.

Concrete implementations: 'S3ObjectStore'.
"""

from abc import ABC, abstractmethod

SIGNED_URL_EXPIRY_SECONDS = 24 * 60 * 60


def conversation_prefix(conversation_id: str) -> str:
    return f"conversations/{conversation_id}/"


def object_key(conversation_id: str, name: str) -> str:
    return f"{conversation_prefix(conversation_id)}{name}"


class ObjectStore(ABC):
    @abstractmethod
    async def upload(self, conversation_id: str, name: str, data: bytes, content_type: str) -> str:
        """Store 'data' and return its key."""
        pass

    @abstractmethod
    async def get_signed_url(self, key: str, expires_in: int = SIGNED_URL_EXPIRY_SECONDS) -> str:
        pass

    @abstractmethod
    async def delete_prefix(self, conversation_id: str) -> int:
        """Delete every object of a conversation and return how many were removed."""
        pass
