"""
Identity helpers shared by storage backends, the controller and the client.

Message identities have the shape 'MESSAGE#<iso timestamp>#<uuid4>'. Because the
timestamp is fixed-width UTC, identities sort lexically in creation order, which
lets a single ordered range query return a conversation's messages oldest first.
"""

import re
import uuid
from collections.abc import Iterable, Iterator
from typing import TypeVar

from eva_toolkit.utils.time import get_current_isoformat

MESSAGE_PREFIX = "MESSAGE#"
CONVERSATION_PREFIX = "CONVERSATION#"
USER_PREFIX = "USER#"
OWNER_SK = "OWNER"

MESSAGE_ID_PATTERN = re.compile(
    r"MESSAGE#\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{6}Z#"
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
)

T = TypeVar("T")


def generate_uid() -> str:
    return str(uuid.uuid4())


def generate_message_id() -> str:
    return f"{MESSAGE_PREFIX}{get_current_isoformat()}#{generate_uid()}"


def conversation_pk(conversation_id: str) -> str:
    return f"{CONVERSATION_PREFIX}{conversation_id}"


def user_pk(user_id: str) -> str:
    return f"{USER_PREFIX}{user_id}"


def is_message_id(value: str) -> bool:
    return MESSAGE_ID_PATTERN.fullmatch(value) is not None


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive lists of at most 'size' items."""
    if size < 1:
        raise ValueError("size must be at least 1")
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch
