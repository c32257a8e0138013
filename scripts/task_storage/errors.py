"""Exception types raised by the task storage layer.

Every error derives from StorageError and also from the builtin exception a
caller would naturally catch for that failure, so the host boundary can keep
handling plain ValueError/OSError.
"""

from __future__ import annotations


class StorageError(Exception):
    """Base class for task storage failures."""


class CodecError(StorageError, ValueError):
    """Stored bytes could not be decoded into a Task or TaskList."""


class StorageFullError(StorageError, OSError):
    """The underlying memory refused to grow."""


class MemoryAccessError(StorageError, IndexError):
    """A read or write fell outside the memory's current size."""


class MemoryLayoutError(StorageError, ValueError):
    """A memory manager or stable map header is corrupt or unsupported."""
