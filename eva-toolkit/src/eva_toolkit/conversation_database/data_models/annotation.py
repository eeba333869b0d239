"""
Message annotation sidecar and its merge algebra.

Message content (what the model said) is immutable once stored. Everything the
user or the UI derives from it afterwards lives in a single 'MessageAnnotation'
attached to the message: per-part metadata keyed 'part_<index>' (report
membership, filter threshold) and message-level follow-up suggestions.

Keeping the sidecar separate means content and user state have independent
write paths. Updates are always targeted at one part's fields:
'merge_part_field' only ever adds keys or overwrites the fields it is given,
and a field explicitly passed as 'None' is skipped rather than written, so a
partial update can never erase an unrelated field.
"""

from collections.abc import Iterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from eva_toolkit.utils.time import get_current_isoformat

if TYPE_CHECKING:
    from eva_toolkit.conversation_database.data_models.message import Message, Part


class PartMetadata(BaseModel):
    """User-derived state for one part of a message."""

    is_in_report: bool | None = None
    threshold: float | None = None


class PartMetadataUpdate(PartMetadata):
    """Fields to change on one part. Fields left as 'None' are not touched."""

    def fields(self) -> dict[str, Any]:
        return {key: value for key, value in self.model_dump().items() if value is not None}


class Suggestion(BaseModel):
    """A follow-up action proposed after an assistant turn, tied to a tool."""

    tool_name: str
    content: str


class MessageAnnotation(BaseModel):
    parts: dict[str, PartMetadata] = Field(default_factory=dict)
    suggestions: list[Suggestion] | None = None
    created_at: str = Field(default_factory=get_current_isoformat)


def part_key(part_idx: int) -> str:
    if part_idx < 0:
        raise ValueError(f"Part index must be non-negative, got {part_idx}")
    return f"part_{part_idx}"


def get_annotation(message: "Message") -> MessageAnnotation | None:
    return getattr(message, "annotation", None)


def get_part_metadata(message: "Message", part_idx: int) -> PartMetadata:
    annotation = get_annotation(message)
    if annotation is None:
        return PartMetadata()
    return annotation.parts.get(part_key(part_idx), PartMetadata())


def _update_fields(updates: PartMetadataUpdate | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(updates, PartMetadataUpdate):
        return updates.fields()
    allowed = PartMetadata.model_fields
    unknown = set(updates) - set(allowed)
    if unknown:
        raise ValueError(f"Unknown part metadata field(s): {sorted(unknown)}")
    return {key: value for key, value in updates.items() if value is not None}


def merge_part_field(
    annotation: MessageAnnotation | None,
    part_idx: int,
    updates: PartMetadataUpdate | Mapping[str, Any],
) -> MessageAnnotation:
    """Return a copy of 'annotation' with only the targeted part's given fields changed."""
    base = annotation.model_copy(deep=True) if annotation is not None else MessageAnnotation()
    key = part_key(part_idx)
    current = base.parts.get(key, PartMetadata())
    base.parts[key] = current.model_copy(update=_update_fields(updates))
    return base


def with_suggestions(annotation: MessageAnnotation | None, suggestions: Sequence[Suggestion]) -> MessageAnnotation:
    base = annotation.model_copy(deep=True) if annotation is not None else MessageAnnotation()
    base.suggestions = list(suggestions)
    return base


def report_parts(messages: Sequence["Message"]) -> Iterator[tuple["Message", int, "Part"]]:
    """Yield every part flagged for the report, in conversation order."""
    for message in messages:
        for idx, part in enumerate(message.parts):
            if get_part_metadata(message, idx).is_in_report:
                yield message, idx, part
