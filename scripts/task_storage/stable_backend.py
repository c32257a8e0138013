"""Stable-memory storage backend for task lists.

Task lists are kept in a log-structured map inside one virtual memory of a
MemoryManager. The map header carries the committed log length; a put only
becomes visible once that header is rewritten, so an interrupted put leaves
the previous value in place. The record is synced before the header is
written, and the header is synced after.

Map layout inside the virtual memory:

    0   magic b"TKV", version byte
    4   committed log length (u64), record count (u64)
    32  records: key length (u8) | key | value length (u32) | value
"""

from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import Callable

from task_storage.codec import decode_task_list, encode_task_list
from task_storage.errors import MemoryLayoutError, StorageFullError
from task_storage.memory import (
    PAGE_SIZE,
    FileMemory,
    Memory,
    MemoryId,
    MemoryManager,
)
from task_storage.protocol import Principal, TaskList

logger = logging.getLogger(__name__)

MAP_MAGIC: bytes = b"TKV"
MAP_LAYOUT_VERSION: int = 1
MAP_HEADER_SIZE: int = 32
TASK_MEMORY_ID: MemoryId = MemoryId(0)

_PREFIX = struct.Struct("<3sB")
_COMMIT = struct.Struct("<QQ")
_COMMIT_OFFSET = _PREFIX.size
_VALUE_LEN = struct.Struct("<I")


def _no_sync() -> None:
    pass


class StableTaskMap:
    """Durable Principal -> TaskList map over any Memory.

    The whole log is replayed into an in-memory index on construction; reads
    then cost one memory read plus a decode.

    Attributes:
        memory: The memory holding the map.
        sync: Called to make written bytes durable; a no-op for volatile memory.
    """

    def __init__(self, memory: Memory, sync: Callable[[], None] | None = None) -> None:
        """Open the map, formatting ``memory`` if it is empty.

        Args:
            memory: The memory holding the map.
            sync: Flushes ``memory`` to durable storage. Called after the
                record and again after the header, so a header never reaches
                disk ahead of the record it covers.

        Raises:
            MemoryLayoutError: If the memory holds something other than a map.
            StorageFullError: If an empty memory cannot grow to hold the header.
        """
        self.memory = memory
        self.sync = sync if sync is not None else _no_sync
        self._index: dict[bytes, tuple[int, int]] = {}
        self._committed = 0
        self._count = 0

        if memory.size() == 0:
            if memory.grow(1) == -1:
                raise StorageFullError("Cannot grow memory to hold the task map header")
            header = bytearray(MAP_HEADER_SIZE)
            _PREFIX.pack_into(header, 0, MAP_MAGIC, MAP_LAYOUT_VERSION)
            memory.write(0, bytes(header))
            self.sync()
            logger.debug("Formatted empty task map")
        else:
            self._replay()

    def _replay(self) -> None:
        magic, version = _PREFIX.unpack(self.memory.read(0, _PREFIX.size))
        if magic != MAP_MAGIC:
            raise MemoryLayoutError(f"Bad task map magic: {magic!r}")
        if version != MAP_LAYOUT_VERSION:
            raise MemoryLayoutError(f"Unsupported task map layout version {version}")

        committed, count = _COMMIT.unpack(self.memory.read(_COMMIT_OFFSET, _COMMIT.size))
        end = MAP_HEADER_SIZE + committed
        if end > self.memory.size() * PAGE_SIZE:
            raise MemoryLayoutError("Committed log length exceeds memory size")

        pos = MAP_HEADER_SIZE
        seen = 0
        while pos < end:
            key_len = self.memory.read(pos, 1)[0]
            key = self.memory.read(pos + 1, key_len)
            pos += 1 + key_len
            (value_len,) = _VALUE_LEN.unpack(self.memory.read(pos, _VALUE_LEN.size))
            pos += _VALUE_LEN.size
            self._index[key] = (pos, value_len)
            pos += value_len
            seen += 1

        if pos != end or seen != count:
            raise MemoryLayoutError(
                f"Task map log is inconsistent: replayed {seen} records to offset "
                f"{pos}, header says {count} records ending at {end}"
            )
        self._committed = committed
        self._count = count
        logger.debug("Replayed task map: %d records, %d keys", count, len(self._index))

    def get(self, principal: Principal) -> TaskList | None:
        location = self._index.get(principal.raw)
        if location is None:
            return None
        offset, length = location
        return decode_task_list(self.memory.read(offset, length))

    def put(self, principal: Principal, task_list: TaskList) -> None:
        """Append a new record for ``principal`` and commit it.

        Raises:
            StorageFullError: If the memory cannot grow to hold the record.
        """
        key = principal.raw
        value = encode_task_list(task_list)
        record = bytes([len(key)]) + key + _VALUE_LEN.pack(len(value)) + value

        start = MAP_HEADER_SIZE + self._committed
        end = start + len(record)
        needed_pages = -(-end // PAGE_SIZE)
        shortfall = needed_pages - self.memory.size()
        if shortfall > 0 and self.memory.grow(shortfall) == -1:
            raise StorageFullError(
                f"Cannot grow task map by {shortfall} pages for {principal}"
            )

        self.memory.write(start, record)
        self.sync()
        # Commit point: the record is invisible until the header covers it
        self.memory.write(_COMMIT_OFFSET, _COMMIT.pack(end - MAP_HEADER_SIZE, self._count + 1))
        self.sync()

        self._committed = end - MAP_HEADER_SIZE
        self._count += 1
        self._index[key] = (end - len(value), len(value))
        logger.debug(
            "Stored %d tasks for %s (%d bytes)", len(task_list), principal, len(value)
        )

    def keys(self) -> list[Principal]:
        """Return every stored principal, ordered by raw bytes."""
        return sorted(Principal(k) for k in self._index)

    def __contains__(self, principal: Principal) -> bool:
        return principal.raw in self._index

    def __len__(self) -> int:
        return len(self._index)


class StableStorageBackend:
    """File-backed stable storage backend for task lists.

    Opens the file as page memory, attaches a MemoryManager and keeps the
    task map in memory 0.

    Attributes:
        path: The backing file.

    Example:
        backend = StableStorageBackend(Path("/srv/tasks/tasks.stable"))
        backend.put(principal, task_list)
        task_list = backend.get(principal)
    """

    def __init__(
        self,
        path: Path,
        max_pages: int | None = None,
        bucket_size_in_pages: int | None = None,
    ) -> None:
        """Open or create the stable store at ``path``.

        Args:
            path: The backing file.
            max_pages: Optional cap on the physical size of the file.
            bucket_size_in_pages: Bucket size used when formatting a new file.
        """
        self.path = path
        self._file = FileMemory(path, max_pages=max_pages)
        try:
            if bucket_size_in_pages is None:
                manager = MemoryManager(self._file)
            else:
                manager = MemoryManager(self._file, bucket_size_in_pages)
            self._map = StableTaskMap(manager.get(TASK_MEMORY_ID), sync=self._file.sync)
        except Exception:
            self._file.close()
            raise
        logger.debug("Opened stable task store %s with %d principals", path, len(self._map))

    def get(self, principal: Principal) -> TaskList | None:
        return self._map.get(principal)

    def put(self, principal: Principal, task_list: TaskList) -> None:
        self._map.put(principal, task_list)

    def principals(self) -> list[Principal]:
        return self._map.keys()

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> StableStorageBackend:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
