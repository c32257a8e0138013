"""Self-describing binary encoding for Task and TaskList values.

Every encoded value starts with a four byte magic and a schema version byte,
followed by one tagged value:

    0x01 bool    one byte, 0 or 1
    0x02 text    ULEB128 byte length, UTF-8 bytes
    0x03 record  ULEB128 field count, then (ULEB128-prefixed UTF-8 name, value)*
    0x04 vector  ULEB128 element count, then values

Field names travel with the data, so a reader can tell which field is which
without an external schema. Unknown record fields are skipped on decode.
"""

from __future__ import annotations

from typing import Union

from task_storage.errors import CodecError
from task_storage.protocol import Task, TaskList

MAGIC: bytes = b"TSKL"
SCHEMA_VERSION: int = 1

TAG_BOOL: int = 0x01
TAG_TEXT: int = 0x02
TAG_RECORD: int = 0x03
TAG_VECTOR: int = 0x04

# A TaskList is three levels deep; anything far past that is malformed
MAX_NESTING_DEPTH: int = 16

Value = Union[bool, str, dict[str, "Value"], list["Value"]]


def _write_uleb128(out: bytearray, n: int) -> None:
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return


def _encode_text(text: str) -> bytes:
    try:
        return text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise CodecError(f"Text is not valid Unicode: {e}") from e


def _write_value(out: bytearray, value: Value) -> None:
    # bool first: it is also an int subclass
    if isinstance(value, bool):
        out.append(TAG_BOOL)
        out.append(1 if value else 0)
    elif isinstance(value, str):
        data = _encode_text(value)
        out.append(TAG_TEXT)
        _write_uleb128(out, len(data))
        out.extend(data)
    elif isinstance(value, dict):
        out.append(TAG_RECORD)
        _write_uleb128(out, len(value))
        for name, item in value.items():
            name_bytes = _encode_text(name)
            _write_uleb128(out, len(name_bytes))
            out.extend(name_bytes)
            _write_value(out, item)
    elif isinstance(value, list):
        out.append(TAG_VECTOR)
        _write_uleb128(out, len(value))
        for item in value:
            _write_value(out, item)
    else:
        raise TypeError(f"Cannot encode value of type {type(value).__name__}")


class _Reader:
    """Cursor over an encoded buffer; every read is bounds checked."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def take(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self.data):
            raise CodecError(
                f"Truncated input: need {n} bytes at offset {self.pos}, "
                f"have {len(self.data) - self.pos}"
            )
        chunk = self.data[self.pos : end]
        self.pos = end
        return chunk

    def byte(self) -> int:
        return self.take(1)[0]

    def uleb128(self) -> int:
        result = 0
        shift = 0
        while True:
            byte = self.byte()
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
            shift += 7
            if shift > 63:
                raise CodecError("ULEB128 value too large")

    def text(self) -> str:
        raw = self.take(self.uleb128())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CodecError(f"Invalid UTF-8 in text value: {e}") from e

    def value(self, depth: int = 0) -> Value:
        if depth > MAX_NESTING_DEPTH:
            raise CodecError("Value nesting too deep")
        tag = self.byte()
        if tag == TAG_BOOL:
            flag = self.byte()
            if flag not in (0, 1):
                raise CodecError(f"Invalid bool byte: {flag:#x}")
            return flag == 1
        if tag == TAG_TEXT:
            return self.text()
        if tag == TAG_RECORD:
            record: dict[str, Value] = {}
            for _ in range(self.uleb128()):
                name = self.text()
                record[name] = self.value(depth + 1)
            return record
        if tag == TAG_VECTOR:
            return [self.value(depth + 1) for _ in range(self.uleb128())]
        raise CodecError(f"Unknown value tag: {tag:#x}")


def encode_value(value: Value) -> bytes:
    """Encode a value tree with the magic and version header."""
    out = bytearray(MAGIC)
    out.append(SCHEMA_VERSION)
    _write_value(out, value)
    return bytes(out)


def decode_value(data: bytes) -> Value:
    """Decode bytes produced by encode_value.

    Raises:
        CodecError: On a bad header, unsupported version, malformed body or
            trailing bytes.
    """
    reader = _Reader(bytes(data))
    if reader.take(len(MAGIC)) != MAGIC:
        raise CodecError("Bad magic: not an encoded task value")
    version = reader.byte()
    if version != SCHEMA_VERSION:
        raise CodecError(
            f"Unsupported schema version {version}; expected {SCHEMA_VERSION}"
        )
    value = reader.value()
    if reader.pos != len(reader.data):
        raise CodecError(f"{len(reader.data) - reader.pos} trailing bytes after value")
    return value


def _task_to_value(task: Task) -> Value:
    return {
        "title": task.title,
        "completed": task.completed,
        "important": task.important,
    }


def _value_to_task(value: Value) -> Task:
    if not isinstance(value, dict):
        raise CodecError("Expected a record for Task")
    try:
        return Task.from_dict(value)
    except KeyError as e:
        raise CodecError(f"Task record missing field {e.args[0]!r}") from e
    except TypeError as e:
        raise CodecError(f"Task record has wrong field type: {e}") from e


def encode_task(task: Task) -> bytes:
    return encode_value(_task_to_value(task))


def decode_task(data: bytes) -> Task:
    return _value_to_task(decode_value(data))


def encode_task_list(task_list: TaskList) -> bytes:
    return encode_value({"tasks": [_task_to_value(t) for t in task_list.tasks]})


def decode_task_list(data: bytes) -> TaskList:
    """Decode a TaskList, preserving task order.

    Raises:
        CodecError: If the bytes are not a well-formed TaskList.
    """
    value = decode_value(data)
    if not isinstance(value, dict):
        raise CodecError("Expected a record for TaskList")
    if "tasks" not in value:
        raise CodecError("TaskList record missing field 'tasks'")
    tasks = value["tasks"]
    if not isinstance(tasks, list):
        raise CodecError("TaskList field 'tasks' must be a vector")
    return TaskList(tasks=[_value_to_task(item) for item in tasks])
