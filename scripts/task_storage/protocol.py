"""Protocols and type definitions for task storage backends.

This module defines the data model shared by every backend (Principal, Task,
TaskList) and the StorageBackend protocol all backends must implement.
"""

from __future__ import annotations

import base64
import zlib
from dataclasses import dataclass, field
from typing import Protocol

MAX_PRINCIPAL_LENGTH: int = 29
ANONYMOUS_PRINCIPAL_BYTES: bytes = b"\x04"


@dataclass(frozen=True, order=True)
class Principal:
    """Opaque caller identity supplied by the host.

    Principals compare and sort by their raw bytes, which makes them usable
    as ordered map keys.

    Attributes:
        raw: The identifier bytes (at most 29).
    """

    raw: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.raw, bytes):
            raise TypeError(f"Principal bytes must be bytes, got {type(self.raw).__name__}")
        if len(self.raw) > MAX_PRINCIPAL_LENGTH:
            raise ValueError(
                f"Principal is {len(self.raw)} bytes; maximum is {MAX_PRINCIPAL_LENGTH}"
            )

    @classmethod
    def anonymous(cls) -> Principal:
        """Return the anonymous principal ("2vxsx-fae")."""
        return cls(ANONYMOUS_PRINCIPAL_BYTES)

    @classmethod
    def from_text(cls, text: str) -> Principal:
        """Parse the dashed base32 textual form of a principal.

        Args:
            text: Text such as "2vxsx-fae".

        Returns:
            The decoded Principal.

        Raises:
            ValueError: If the text is malformed or the checksum does not match.
            TypeError: If text is not a string.
        """
        if not isinstance(text, str):
            raise TypeError(f"Principal text must be a string, got {type(text).__name__}")
        compact = text.replace("-", "").upper()
        if not compact or not compact.isalnum():
            raise ValueError(f"Invalid principal text: {text!r}")

        padding = "=" * (-len(compact) % 8)
        try:
            decoded = base64.b32decode(compact + padding)
        except ValueError as e:
            raise ValueError(f"Invalid principal text: {text!r}") from e

        if len(decoded) < 4:
            raise ValueError(f"Principal text too short: {text!r}")

        checksum, raw = decoded[:4], decoded[4:]
        principal = cls(raw)
        if zlib.crc32(raw).to_bytes(4, "big") != checksum:
            raise ValueError(f"Principal checksum mismatch: {text!r}")
        # Dashes must sit exactly where to_text() puts them
        if principal.to_text() != text.lower():
            raise ValueError(f"Principal text is not canonical: {text!r}")
        return principal

    def to_text(self) -> str:
        """Return the textual form: crc32 + bytes, base32, grouped by five."""
        checksum = zlib.crc32(self.raw).to_bytes(4, "big")
        encoded = base64.b32encode(checksum + self.raw).decode("ascii")
        encoded = encoded.rstrip("=").lower()
        return "-".join(encoded[i : i + 5] for i in range(0, len(encoded), 5))

    def __str__(self) -> str:
        return self.to_text()


@dataclass(frozen=True)
class Task:
    """A single task owned by one TaskList.

    Attributes:
        title: Free-form description; not validated.
        completed: Whether the task is done.
        important: Whether the task is flagged as important.
    """

    title: str
    completed: bool
    important: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "title": self.title,
            "completed": self.completed,
            "important": self.important,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> Task:
        """Build a Task from its dict form, checking field types.

        Raises:
            KeyError: If a field is missing.
            TypeError: If a field has the wrong type.
        """
        title = data["title"]
        completed = data["completed"]
        important = data["important"]
        if not isinstance(title, str):
            raise TypeError("task title must be a string")
        if not isinstance(completed, bool) or not isinstance(important, bool):
            raise TypeError("task flags must be booleans")
        return cls(title=title, completed=completed, important=important)


@dataclass
class TaskList:
    """Ordered, append-only list of tasks for one principal."""

    tasks: list[Task] = field(default_factory=list)

    def add_task(self, task: Task) -> None:
        self.tasks.append(task)

    def get_tasks(self) -> list[Task]:
        """Return a copy of the tasks in insertion order."""
        return list(self.tasks)

    def __len__(self) -> int:
        return len(self.tasks)


class StorageBackend(Protocol):
    """Protocol for task list storage backends.

    All storage backends must implement these methods to be usable by the
    service operations.
    """

    def get(self, principal: Principal) -> TaskList | None:
        """Load the task list stored for a principal.

        Args:
            principal: The caller identity to look up.

        Returns:
            The stored TaskList, or None if the principal has never stored one.

        Raises:
            CodecError: If the stored bytes cannot be decoded.
            OSError: If the underlying storage cannot be read.
        """
        ...

    def put(self, principal: Principal, task_list: TaskList) -> None:
        """Atomically insert or replace the task list for a principal.

        If the write fails, the previously stored list stays readable.

        Args:
            principal: The caller identity to store under.
            task_list: The complete list to store.

        Raises:
            StorageFullError: If the storage cannot grow to hold the list.
            OSError: If the underlying storage cannot be written.
        """
        ...

    def close(self) -> None:
        """Release any resources held by the backend."""
        ...
