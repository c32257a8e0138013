"""Storage backend factory and exports for principal-scoped task lists.

This module provides a factory function to get the appropriate storage backend
based on the TASKLIST_STORAGE_BACKEND environment variable.

Supported backends:
    - "stable" (default): page-addressed stable memory in a single file
    - "json": JSON document storage
    - "sqlite": SQLite database storage

Environment Variables:
    TASKLIST_STORAGE_BACKEND: "stable" (default), "json" or "sqlite"
    TASKLIST_STABLE_PATH: Custom path for the stable backend (relative or absolute)
    TASKLIST_JSON_PATH: Custom path for the JSON backend (relative or absolute)
    TASKLIST_SQLITE_PATH: Custom path for the SQLite backend (relative or absolute)

Example:
    from task_storage import get_storage_backend
    from pathlib import Path

    backend = get_storage_backend(Path("/srv/tasks"))
    task_list = backend.get(principal)
    backend.put(principal, task_list)
"""

from __future__ import annotations

import os
from pathlib import Path

from task_storage.errors import (
    CodecError,
    MemoryAccessError,
    MemoryLayoutError,
    StorageError,
    StorageFullError,
)
from task_storage.json_backend import JSONStorageBackend
from task_storage.protocol import Principal, StorageBackend, Task, TaskList
from task_storage.sqlite_backend import SQLiteStorageBackend
from task_storage.stable_backend import StableStorageBackend

__all__ = [
    "CodecError",
    "JSONStorageBackend",
    "MemoryAccessError",
    "MemoryLayoutError",
    "Principal",
    "SQLiteStorageBackend",
    "StableStorageBackend",
    "StorageBackend",
    "StorageError",
    "StorageFullError",
    "Task",
    "TaskList",
    "get_storage_backend",
    "_resolve_safe_path",
]

DEFAULT_BACKEND: str = "stable"


def _resolve_safe_path(base_dir: Path, user_path: str) -> Path | None:
    """Resolve a path, ensuring it stays within base_dir.

    Args:
        base_dir: The base directory paths must stay within.
        user_path: User-provided path (relative or absolute).

    Returns:
        Resolved absolute path, or None if path escapes base_dir.
    """
    if not user_path or not user_path.strip():
        return None

    if "\x00" in user_path:
        return None

    candidate = Path(user_path)
    if not candidate.is_absolute():
        candidate = base_dir / candidate

    # Resolve to absolute, following symlinks
    resolved = candidate.resolve()
    base_resolved = base_dir.resolve()

    try:
        resolved.relative_to(base_resolved)
        return resolved
    except ValueError:
        return None  # Path escapes data directory


def _get_path(data_dir: Path, env_var: str, default_name: str) -> Path:
    """Get a backend path from the environment or the default file name.

    Args:
        data_dir: The data root directory.
        env_var: Environment variable that may hold a custom path.
        default_name: File name used under data_dir when env_var is unset.

    Returns:
        Path to the backend's storage file.

    Raises:
        ValueError: If the custom path escapes the data directory.
    """
    custom_path = os.environ.get(env_var, "").strip()

    if custom_path:
        safe_path = _resolve_safe_path(data_dir, custom_path)
        if safe_path is None:
            raise ValueError(f"{env_var} '{custom_path}' escapes data directory")
        return safe_path

    return data_dir / default_name


def get_backend_name() -> str:
    """Return the configured backend name, lower-cased, defaulting to stable."""
    backend_type = os.environ.get("TASKLIST_STORAGE_BACKEND", "").strip().lower()
    return backend_type or DEFAULT_BACKEND


def get_storage_backend(data_dir: Path) -> StorageBackend:
    """Get the configured storage backend for task lists.

    Path configuration:
        - stable: TASKLIST_STABLE_PATH or <data_dir>/tasks.stable
        - json: TASKLIST_JSON_PATH or <data_dir>/tasks.json
        - sqlite: TASKLIST_SQLITE_PATH or <data_dir>/tasks.db

    Args:
        data_dir: The data root directory used for resolving paths.

    Returns:
        An instance of the configured StorageBackend.

    Raises:
        ValueError: If the storage backend or path configuration is invalid.
    """
    backend_type = get_backend_name()

    if backend_type == "stable":
        return StableStorageBackend(_get_path(data_dir, "TASKLIST_STABLE_PATH", "tasks.stable"))
    elif backend_type == "json":
        return JSONStorageBackend(_get_path(data_dir, "TASKLIST_JSON_PATH", "tasks.json"))
    elif backend_type == "sqlite":
        return SQLiteStorageBackend(_get_path(data_dir, "TASKLIST_SQLITE_PATH", "tasks.db"))
    else:
        raise ValueError(
            f"Unknown storage backend: {backend_type!r}. "
            f"Expected 'stable', 'json' or 'sqlite'."
        )
