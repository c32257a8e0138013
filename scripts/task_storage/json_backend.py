"""JSON file-based storage backend for task lists.

This module provides a storage backend that persists every principal's task
list in one JSON document. It uses atomic writes (temp file + os.replace) to
ensure data consistency.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from task_storage.errors import CodecError
from task_storage.protocol import Principal, Task, TaskList

logger = logging.getLogger(__name__)

DOCUMENT_VERSION: int = 1


class JSONStorageBackend:
    """JSON file-based storage backend for task lists.

    The document maps principal text to a list of task objects:

        {"version": 1, "task_lists": {"2vxsx-fae": [{"title": ...}, ...]}}

    Attributes:
        store_file: The Path to the JSON document.

    Example:
        backend = JSONStorageBackend(Path("/srv/tasks/tasks.json"))
        backend.put(principal, task_list)
        task_list = backend.get(principal)
    """

    def __init__(self, store_file: Path) -> None:
        """Initialize the JSON storage backend.

        Args:
            store_file: The path to the JSON document.
        """
        self.store_file = store_file

    def _load_document(self) -> dict[str, list[dict[str, Any]]]:
        """Load the principal -> tasks mapping.

        Returns an empty mapping if the file doesn't exist.

        Raises:
            CodecError: If the file is not a valid task document.
            OSError: If the file exists but cannot be read.
        """
        if not self.store_file.exists():
            return {}

        with open(self.store_file, "r", encoding="utf-8") as f:
            try:
                document = json.load(f)
            except json.JSONDecodeError as e:
                raise CodecError(f"{self.store_file} is not valid JSON: {e}") from e

        if not isinstance(document, dict) or document.get("version") != DOCUMENT_VERSION:
            raise CodecError(f"{self.store_file} is not a version {DOCUMENT_VERSION} task document")
        task_lists = document.get("task_lists")
        if not isinstance(task_lists, dict):
            raise CodecError(f"{self.store_file} has no task_lists mapping")
        return task_lists

    def get(self, principal: Principal) -> TaskList | None:
        """Load the task list for a principal.

        Returns:
            The TaskList, or None if the principal has no entry.

        Raises:
            CodecError: If the document or the principal's entry is malformed.
        """
        raw_tasks = self._load_document().get(principal.to_text())
        if raw_tasks is None:
            return None
        if not isinstance(raw_tasks, list):
            raise CodecError(f"Task list for {principal} is not an array")
        try:
            return TaskList(tasks=[Task.from_dict(item) for item in raw_tasks])
        except (KeyError, TypeError) as e:
            raise CodecError(f"Malformed task for {principal}: {e!r}") from e

    def put(self, principal: Principal, task_list: TaskList) -> None:
        """Atomically replace the task list for a principal.

        Creates the parent directory if needed. Reads the document, replaces
        the principal's entry, and writes to a temporary file before
        atomically moving it to the final location.

        Raises:
            OSError: If there's an error creating directories or writing files.
        """
        # Ensure parent directory exists
        self.store_file.parent.mkdir(parents=True, exist_ok=True)

        task_lists = self._load_document()
        task_lists[principal.to_text()] = [task.to_dict() for task in task_list.tasks]
        document = {"version": DOCUMENT_VERSION, "task_lists": task_lists}

        # Write to temp file first, then atomically rename
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.store_file.parent, suffix=".tmp"
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
            os.replace(temp_path, self.store_file)  # Atomic on POSIX
        except (OSError, TypeError, ValueError):
            # Clean up temp file on failure
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
        logger.debug("Stored %d tasks for %s in %s", len(task_list), principal, self.store_file)

    def close(self) -> None:
        """Compatibility hook for shutdown (no open handles to close)."""
        return

    def principals(self) -> list[Principal]:
        """Return every stored principal, ordered by raw bytes."""
        return sorted(Principal.from_text(text) for text in self._load_document())
