"""Shared fixtures and utilities for task storage tests.

This module provides common test fixtures used across all storage tests,
including sample tasks, principals, temporary directories, and parameterized
backend instances.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from task_storage.json_backend import JSONStorageBackend
from task_storage.memory import VectorMemory
from task_storage.protocol import Principal, StorageBackend, Task, TaskList
from task_storage.sqlite_backend import SQLiteStorageBackend
from task_storage.stable_backend import StableStorageBackend


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory for testing.

    Returns:
        Path to a clean temporary directory.
    """
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def principal_a() -> Principal:
    return Principal(b"\x00\x00\x00\x00\x00\x00\x00\x01\x01\x01")


@pytest.fixture
def principal_b() -> Principal:
    return Principal(b"\x00\x00\x00\x00\x00\x00\x00\x02\x01\x01")


@pytest.fixture
def sample_task() -> Task:
    """Create a sample task for testing.

    Returns:
        A Task with a plain title and mixed flags.
    """
    return Task(title="Buy milk", completed=False, important=True)


@pytest.fixture
def sample_tasks() -> list[Task]:
    """Create a list of sample tasks covering every flag combination.

    Returns:
        Four tasks, one per completed/important combination.
    """
    return [
        Task(title="Buy milk", completed=False, important=True),
        Task(title="Pay rent", completed=False, important=False),
        Task(title="File taxes", completed=True, important=True),
        Task(title="Water plants", completed=True, important=False),
    ]


@pytest.fixture
def sample_task_list(sample_tasks: list[Task]) -> TaskList:
    return TaskList(tasks=list(sample_tasks))


@pytest.fixture
def vector_memory() -> VectorMemory:
    return VectorMemory()


@pytest.fixture(params=["stable", "json", "sqlite"])
def storage_backend(request, tmp_data_dir: Path) -> Iterator[StorageBackend]:
    """Parameterized fixture providing every storage backend type.

    This fixture enables cross-backend compliance testing by running the same
    tests against the stable, JSON and SQLite implementations.

    Args:
        request: Pytest request object with param.
        tmp_data_dir: Temporary data directory.

    Yields:
        An instance of the requested backend, closed after the test.
    """
    if request.param == "stable":
        backend: StorageBackend = StableStorageBackend(
            tmp_data_dir / "tasks.stable", bucket_size_in_pages=1
        )
    elif request.param == "json":
        backend = JSONStorageBackend(tmp_data_dir / "tasks.json")
    else:
        backend = SQLiteStorageBackend(tmp_data_dir / "tasks.db")
    yield backend
    backend.close()


@pytest.fixture
def stable_backend(tmp_data_dir: Path) -> Iterator[StableStorageBackend]:
    """Create a stable storage backend with one-page buckets."""
    backend = StableStorageBackend(tmp_data_dir / "tasks.stable", bucket_size_in_pages=1)
    yield backend
    backend.close()


@pytest.fixture
def json_backend(tmp_data_dir: Path) -> JSONStorageBackend:
    """Create a JSON storage backend for JSON-specific tests."""
    return JSONStorageBackend(tmp_data_dir / "tasks.json")


@pytest.fixture
def sqlite_backend(tmp_data_dir: Path) -> SQLiteStorageBackend:
    """Create a SQLite storage backend for SQLite-specific tests."""
    return SQLiteStorageBackend(tmp_data_dir / "tasks.db")
