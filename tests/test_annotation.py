"""Tests for the annotation sidecar and its merge rules."""

import pytest

from eva_toolkit.conversation_database.data_models.annotation import (
    MessageAnnotation,
    PartMetadata,
    PartMetadataUpdate,
    Suggestion,
    get_annotation,
    get_part_metadata,
    merge_part_field,
    part_key,
    report_parts,
    with_suggestions,
)
from eva_toolkit.conversation_database.data_models.message import Message, TextPart
from eva_toolkit.llms.base import Roles

from fakes import message_id


def assistant(parts: int, annotation: MessageAnnotation | None = None, second: int = 1) -> Message:
    return Message(
        id=message_id(second),
        conversation_id="c",
        role=Roles.ASSISTANT,
        parts=[TextPart(text=f"part {i}") for i in range(parts)],
        annotation=annotation,
    )


def test_part_key():
    assert part_key(0) == "part_0"
    assert part_key(12) == "part_12"


def test_part_key_rejects_negative_index():
    with pytest.raises(ValueError):
        part_key(-1)


def test_merge_into_missing_annotation_creates_one():
    merged = merge_part_field(None, 2, PartMetadataUpdate(is_in_report=True))

    assert merged.parts == {"part_2": PartMetadata(is_in_report=True)}
    assert merged.suggestions is None


def test_merge_keeps_other_fields_of_the_same_part():
    annotation = merge_part_field(None, 0, {"is_in_report": True})

    merged = merge_part_field(annotation, 0, {"threshold": 0.5})

    assert merged.parts["part_0"] == PartMetadata(is_in_report=True, threshold=0.5)


def test_merge_keeps_other_parts_and_suggestions():
    suggestions = [Suggestion(tool_name="biomcp_article_searcher", content="Find papers on IL6")]
    annotation = MessageAnnotation(parts={"part_1": PartMetadata(threshold=0.1)}, suggestions=suggestions)

    merged = merge_part_field(annotation, 0, PartMetadataUpdate(is_in_report=True))

    assert merged.parts["part_1"] == PartMetadata(threshold=0.1)
    assert merged.parts["part_0"] == PartMetadata(is_in_report=True)
    assert merged.suggestions == suggestions
    assert merged.created_at == annotation.created_at


def test_merge_skips_none_values():
    annotation = merge_part_field(None, 0, {"is_in_report": True, "threshold": 0.3})

    merged = merge_part_field(annotation, 0, {"is_in_report": None, "threshold": 0.7})

    assert merged.parts["part_0"] == PartMetadata(is_in_report=True, threshold=0.7)


def test_merge_does_not_mutate_its_input():
    annotation = merge_part_field(None, 0, {"is_in_report": True})

    merge_part_field(annotation, 0, {"is_in_report": False})
    merge_part_field(annotation, 1, {"threshold": 1.0})

    assert annotation.parts == {"part_0": PartMetadata(is_in_report=True)}


def test_merge_can_unset_report_flag_with_false():
    annotation = merge_part_field(None, 0, {"is_in_report": True})

    merged = merge_part_field(annotation, 0, PartMetadataUpdate(is_in_report=False))

    assert merged.parts["part_0"].is_in_report is False


def test_merge_rejects_unknown_fields():
    with pytest.raises(ValueError):
        merge_part_field(None, 0, {"colour": "red"})


def test_update_fields_only_lists_set_values():
    assert PartMetadataUpdate(threshold=0.2).fields() == {"threshold": 0.2}
    assert PartMetadataUpdate().fields() == {}


def test_get_annotation_on_unpersisted_message():
    message = assistant(1)

    assert get_annotation(message) is None
    assert get_part_metadata(message, 0) == PartMetadata()


def test_with_suggestions_keeps_parts():
    annotation = merge_part_field(None, 0, {"is_in_report": True})

    updated = with_suggestions(annotation, [Suggestion(tool_name="echo", content="again")])

    assert updated.parts == annotation.parts
    assert updated.suggestions == [Suggestion(tool_name="echo", content="again")]
    assert annotation.suggestions is None


def test_report_parts_yields_only_flagged_parts_in_order():
    first = assistant(3, merge_part_field(merge_part_field(None, 2, {"is_in_report": True}), 0, {"threshold": 0.4}))
    second = assistant(2, merge_part_field(None, 1, {"is_in_report": True}), second=2)
    unflagged = assistant(2, merge_part_field(None, 0, {"is_in_report": False}), second=3)

    report = list(report_parts([first, second, unflagged]))

    assert [(message.id, idx) for message, idx, _ in report] == [(first.id, 2), (second.id, 1)]
    assert report[0][2] == TextPart(text="part 2")
