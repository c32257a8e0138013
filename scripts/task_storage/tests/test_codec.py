"""Tests for the self-describing binary task encoding.

This module verifies:
- Round-trips for tasks and task lists, including unusual titles
- The envelope header (magic and schema version)
- Rejection of corrupted, truncated and schema-mismatched input
"""

from __future__ import annotations

import pytest

from task_storage.codec import (
    MAGIC,
    SCHEMA_VERSION,
    TAG_BOOL,
    TAG_RECORD,
    TAG_TEXT,
    TAG_VECTOR,
    decode_task,
    decode_task_list,
    decode_value,
    encode_task,
    encode_task_list,
    encode_value,
)
from task_storage.errors import CodecError
from task_storage.protocol import Task, TaskList


# =============================================================================
# TestRoundTrip
# =============================================================================


class TestRoundTrip:
    """Encoding then decoding gives back an equal value."""

    @pytest.mark.parametrize("completed", [False, True])
    @pytest.mark.parametrize("important", [False, True])
    @pytest.mark.parametrize(
        "title",
        ["", "Buy milk", "实现功能 🚀", "line\nbreak\x00nul", "x" * 70_000],
        ids=["empty", "ascii", "unicode", "control", "long"],
    )
    def test_should_round_trip_task(
        self, title: str, completed: bool, important: bool
    ) -> None:
        """Verify every title and flag combination survives a round-trip."""
        task = Task(title=title, completed=completed, important=important)
        assert decode_task(encode_task(task)) == task

    def test_should_round_trip_empty_task_list(self) -> None:
        """Verify an empty TaskList round-trips to an empty TaskList."""
        assert decode_task_list(encode_task_list(TaskList())) == TaskList()

    def test_should_preserve_task_order(self, sample_task_list: TaskList) -> None:
        """Verify decoding keeps insertion order."""
        decoded = decode_task_list(encode_task_list(sample_task_list))
        assert decoded.get_tasks() == sample_task_list.get_tasks()

    def test_should_round_trip_many_tasks(self) -> None:
        """Verify lists longer than one ULEB128 byte of count decode fully."""
        task_list = TaskList(tasks=[Task(f"task {i}", i % 2 == 0, i % 3 == 0) for i in range(300)])
        assert decode_task_list(encode_task_list(task_list)) == task_list


# =============================================================================
# TestEnvelope
# =============================================================================


class TestEnvelope:
    """Tests for the magic/version header."""

    def test_should_start_with_magic_and_version(self, sample_task: Task) -> None:
        """Verify encoded bytes carry the header."""
        data = encode_task(sample_task)
        assert data[: len(MAGIC)] == MAGIC
        assert data[len(MAGIC)] == SCHEMA_VERSION

    def test_should_carry_field_names(self, sample_task: Task) -> None:
        """Verify the encoding is self-describing."""
        data = encode_task(sample_task)
        for name in (b"title", b"completed", b"important"):
            assert name in data

    def test_should_encode_bool_as_tagged_byte(self) -> None:
        """Verify the wire form of a bare bool."""
        assert encode_value(True) == MAGIC + bytes([SCHEMA_VERSION, TAG_BOOL, 1])

    def test_should_encode_text_with_length_prefix(self) -> None:
        """Verify the wire form of a bare text value."""
        assert encode_value("hé") == MAGIC + bytes([SCHEMA_VERSION, TAG_TEXT, 3]) + "hé".encode()

    def test_should_reject_unencodable_values(self) -> None:
        """Verify numbers are not part of the encoding."""
        with pytest.raises(TypeError):
            encode_value(3)  # type: ignore[arg-type]

    def test_should_reject_lone_surrogate_in_title(self) -> None:
        """Verify text that cannot be UTF-8 encoded raises CodecError."""
        with pytest.raises(CodecError, match="not valid Unicode"):
            encode_task(Task(title="\ud800", completed=False, important=False))

    def test_should_reject_lone_surrogate_in_field_name(self) -> None:
        with pytest.raises(CodecError):
            encode_value({"\udfff": True})


# =============================================================================
# TestDecodeErrors
# =============================================================================


class TestDecodeErrors:
    """Decoding fails loudly on anything that is not a valid value."""

    def test_should_reject_bad_magic(self, sample_task: Task) -> None:
        """Verify foreign bytes are rejected."""
        data = b"XXXX" + encode_task(sample_task)[len(MAGIC) :]
        with pytest.raises(CodecError, match="magic"):
            decode_task(data)

    def test_should_reject_other_schema_version(self, sample_task: Task) -> None:
        """Verify a different schema version is rejected, not guessed at."""
        data = bytearray(encode_task(sample_task))
        data[len(MAGIC)] = SCHEMA_VERSION + 1
        with pytest.raises(CodecError, match="version"):
            decode_task(bytes(data))

    def test_should_reject_truncated_input(self, sample_task_list: TaskList) -> None:
        """Verify every truncation point is detected."""
        data = encode_task_list(sample_task_list)
        for cut in (0, 3, len(MAGIC) + 1, len(data) // 2, len(data) - 1):
            with pytest.raises(CodecError):
                decode_task_list(data[:cut])

    def test_should_reject_trailing_bytes(self, sample_task: Task) -> None:
        """Verify extra bytes after the value are rejected."""
        with pytest.raises(CodecError, match="trailing"):
            decode_task(encode_task(sample_task) + b"\x00")

    def test_should_reject_unknown_tag(self) -> None:
        """Verify an unknown tag byte is rejected."""
        with pytest.raises(CodecError, match="tag"):
            decode_value(MAGIC + bytes([SCHEMA_VERSION, 0x7F]))

    def test_should_reject_invalid_bool_byte(self) -> None:
        """Verify bool payloads other than 0/1 are rejected."""
        with pytest.raises(CodecError):
            decode_value(MAGIC + bytes([SCHEMA_VERSION, TAG_BOOL, 2]))

    def test_should_reject_invalid_utf8(self) -> None:
        """Verify text must be valid UTF-8."""
        with pytest.raises(CodecError, match="UTF-8"):
            decode_value(MAGIC + bytes([SCHEMA_VERSION, TAG_TEXT, 1, 0xFF]))

    def test_should_reject_excessive_nesting(self) -> None:
        """Verify deeply nested vectors raise CodecError, not RecursionError."""
        data = MAGIC + bytes([SCHEMA_VERSION]) + bytes([TAG_VECTOR, 1]) * 5000
        with pytest.raises(CodecError, match="nesting too deep"):
            decode_task_list(data)

    def test_should_accept_nesting_up_to_limit(self) -> None:
        """Verify moderately nested values still decode."""
        value: list = [True]
        for _ in range(10):
            value = [value]
        assert decode_value(encode_value(value)) == value

    def test_should_reject_task_with_missing_field(self) -> None:
        """Verify a record without 'important' does not decode as a Task."""
        data = encode_value({"title": "x", "completed": False})
        with pytest.raises(CodecError, match="important"):
            decode_task(data)

    def test_should_reject_task_with_wrong_field_type(self) -> None:
        """Verify a text flag does not decode as a Task."""
        data = encode_value({"title": "x", "completed": "no", "important": False})
        with pytest.raises(CodecError):
            decode_task(data)

    def test_should_reject_task_list_without_vector(self) -> None:
        """Verify 'tasks' must be a vector."""
        with pytest.raises(CodecError):
            decode_task_list(encode_value({"tasks": "none"}))

    def test_should_reject_task_where_task_list_expected(self, sample_task: Task) -> None:
        """Verify a Task record is not mistaken for a TaskList."""
        with pytest.raises(CodecError):
            decode_task_list(encode_task(sample_task))

    def test_should_raise_value_error_subclass(self) -> None:
        """Verify CodecError can be caught as ValueError."""
        with pytest.raises(ValueError):
            decode_task(b"")


# =============================================================================
# TestForwardCompatibility
# =============================================================================


class TestForwardCompatibility:
    """Extra fields written by a newer writer do not break reading."""

    def test_should_ignore_unknown_task_fields(self) -> None:
        """Verify an extra record field is skipped."""
        data = encode_value(
            {"title": "x", "completed": True, "important": False, "due_date": "2025-01-01"}
        )
        assert decode_task(data) == Task("x", True, False)

    def test_should_ignore_unknown_task_list_fields(self, sample_task: Task) -> None:
        """Verify an extra TaskList field is skipped."""
        data = encode_value({"tasks": [sample_task.to_dict()], "owner": "someone"})
        assert decode_task_list(data).get_tasks() == [sample_task]

    def test_should_decode_record_independent_of_field_order(self) -> None:
        """Verify fields are matched by name, not position."""
        data = encode_value({"important": True, "title": "x", "completed": False})
        assert decode_task(data) == Task("x", False, True)

    def test_record_tag_is_stable(self, sample_task: Task) -> None:
        """Verify the task body is a record."""
        assert encode_task(sample_task)[len(MAGIC) + 1] == TAG_RECORD


# =============================================================================
# Main Entry Point
# =============================================================================


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
