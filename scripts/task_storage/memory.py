"""Page-addressed memory and the manager that shares it between stores.

A Memory is a flat byte region that only grows, in 64 KiB pages. The
MemoryManager carves one physical Memory into up to 255 independent
VirtualMemory regions, so several logical stores can live in one file
without colliding.

Physical layout used by MemoryManager:

    page 0      header (magic, version, bucket table, per-memory sizes)
    page 1..    buckets of ``bucket_size_in_pages`` pages, each owned by
                exactly one MemoryId, handed out in physical order
"""

from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from task_storage.errors import MemoryAccessError, MemoryLayoutError, StorageFullError

logger = logging.getLogger(__name__)

PAGE_SIZE: int = 65536

MANAGER_MAGIC: bytes = b"MGR"
MANAGER_LAYOUT_VERSION: int = 1
MAX_NUM_MEMORIES: int = 255
MAX_NUM_BUCKETS: int = 32768
DEFAULT_BUCKET_SIZE_IN_PAGES: int = 128
UNALLOCATED_BUCKET: int = 0xFF
HEADER_RESERVED_BYTES: int = 32
BUCKETS_OFFSET_IN_PAGES: int = 1

# magic(3) version(1) allocated buckets(u16) bucket size in pages(u16)
_HEADER_PREFIX = struct.Struct("<3sBHH")
_SIZES_OFFSET = _HEADER_PREFIX.size + HEADER_RESERVED_BYTES
_SIZES = struct.Struct(f"<{MAX_NUM_MEMORIES}Q")
_BUCKETS_OFFSET = _SIZES_OFFSET + _SIZES.size
_HEADER_SIZE = _BUCKETS_OFFSET + MAX_NUM_BUCKETS


class Memory(Protocol):
    """Growable, page-addressed byte region."""

    def size(self) -> int:
        """Return the current size in pages."""
        ...

    def grow(self, pages: int) -> int:
        """Grow by ``pages`` pages.

        Returns:
            The previous size in pages, or -1 if the memory cannot grow.
        """
        ...

    def read(self, offset: int, length: int) -> bytes:
        """Read ``length`` bytes at ``offset``.

        Raises:
            MemoryAccessError: If the range is outside the current size.
        """
        ...

    def write(self, offset: int, data: bytes) -> None:
        """Write ``data`` at ``offset``.

        Raises:
            MemoryAccessError: If the range is outside the current size.
        """
        ...


def _check_bounds(offset: int, length: int, size_in_pages: int) -> None:
    if offset < 0 or length < 0 or offset + length > size_in_pages * PAGE_SIZE:
        raise MemoryAccessError(
            f"Access of {length} bytes at offset {offset} is out of bounds "
            f"({size_in_pages} pages)"
        )


class VectorMemory:
    """In-process Memory backed by a bytearray. Contents die with the object."""

    def __init__(self, max_pages: int | None = None) -> None:
        self.max_pages = max_pages
        self._buf = bytearray()

    def size(self) -> int:
        return len(self._buf) // PAGE_SIZE

    def grow(self, pages: int) -> int:
        previous = self.size()
        if self.max_pages is not None and previous + pages > self.max_pages:
            return -1
        self._buf.extend(bytes(pages * PAGE_SIZE))
        return previous

    def read(self, offset: int, length: int) -> bytes:
        _check_bounds(offset, length, self.size())
        return bytes(self._buf[offset : offset + length])

    def write(self, offset: int, data: bytes) -> None:
        _check_bounds(offset, len(data), self.size())
        self._buf[offset : offset + len(data)] = data


class FileMemory:
    """Memory persisted in a single file, always a whole number of pages long.

    Writes are flushed to the OS immediately; call sync() to force them to
    disk.

    Attributes:
        path: The backing file.
        max_pages: Optional cap on the size; grow() past it returns -1.

    Example:
        with FileMemory(Path("/var/lib/tasks/tasks.stable")) as memory:
            manager = MemoryManager(memory)
    """

    def __init__(self, path: Path, max_pages: int | None = None) -> None:
        """Open (creating if needed) the backing file.

        Raises:
            MemoryLayoutError: If the file length is not a multiple of PAGE_SIZE.
            OSError: If the file cannot be opened.
        """
        self.path = path
        self.max_pages = max_pages
        self.path.parent.mkdir(parents=True, exist_ok=True)
        mode = "r+b" if self.path.exists() else "w+b"
        self._file = open(self.path, mode)

        length = self._file.seek(0, os.SEEK_END)
        if length % PAGE_SIZE:
            self._file.close()
            raise MemoryLayoutError(
                f"{self.path} is {length} bytes, not a whole number of pages"
            )
        self._pages = length // PAGE_SIZE

    def size(self) -> int:
        return self._pages

    def grow(self, pages: int) -> int:
        previous = self._pages
        if self.max_pages is not None and previous + pages > self.max_pages:
            return -1
        try:
            self._file.truncate((previous + pages) * PAGE_SIZE)
        except OSError:
            logger.warning("Could not grow %s by %d pages", self.path, pages, exc_info=True)
            return -1
        self._pages = previous + pages
        return previous

    def read(self, offset: int, length: int) -> bytes:
        _check_bounds(offset, length, self._pages)
        self._file.seek(offset)
        return self._file.read(length)

    def write(self, offset: int, data: bytes) -> None:
        _check_bounds(offset, len(data), self._pages)
        self._file.seek(offset)
        self._file.write(data)
        self._file.flush()

    def sync(self) -> None:
        os.fsync(self._file.fileno())

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> FileMemory:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass(frozen=True)
class MemoryId:
    """Index of a virtual memory inside a MemoryManager (0..254)."""

    value: int

    def __post_init__(self) -> None:
        if not 0 <= self.value < MAX_NUM_MEMORIES:
            raise ValueError(
                f"MemoryId must be in 0..{MAX_NUM_MEMORIES - 1}, got {self.value}"
            )


class MemoryManager:
    """Shares one physical Memory between up to 255 virtual memories.

    Virtual memories grow a bucket at a time. The bucket table in page 0
    records which MemoryId owns each bucket, so the mapping is rebuilt
    exactly when the manager is re-initialised over the same memory.

    Attributes:
        memory: The physical memory being shared.
        bucket_size_in_pages: Pages per bucket (read from the header when the
            memory is already formatted).
    """

    def __init__(
        self, memory: Memory, bucket_size_in_pages: int = DEFAULT_BUCKET_SIZE_IN_PAGES
    ) -> None:
        """Attach to ``memory``, formatting it when it is empty.

        Raises:
            MemoryLayoutError: If the memory holds something other than a
                manager header of a supported version.
            StorageFullError: If an empty memory cannot grow to hold the header.
        """
        if not 0 < bucket_size_in_pages <= 0xFFFF:
            raise ValueError(f"Invalid bucket size: {bucket_size_in_pages}")

        self.memory = memory
        self._sizes: list[int] = [0] * MAX_NUM_MEMORIES
        self._buckets: list[list[int]] = [[] for _ in range(MAX_NUM_MEMORIES)]
        self._allocations = bytearray([UNALLOCATED_BUCKET] * MAX_NUM_BUCKETS)
        self._num_allocated = 0

        if memory.size() == 0:
            if memory.grow(BUCKETS_OFFSET_IN_PAGES) == -1:
                raise StorageFullError("Cannot grow memory to hold the manager header")
            self.bucket_size_in_pages = bucket_size_in_pages
            self._save_header()
            logger.debug("Formatted memory manager, bucket size %d pages", bucket_size_in_pages)
        else:
            self._load_header()

    def _load_header(self) -> None:
        header = self.memory.read(0, _HEADER_SIZE)
        magic, version, num_allocated, bucket_size = _HEADER_PREFIX.unpack_from(header, 0)
        if magic != MANAGER_MAGIC:
            raise MemoryLayoutError(f"Bad memory manager magic: {magic!r}")
        if version != MANAGER_LAYOUT_VERSION:
            raise MemoryLayoutError(f"Unsupported memory manager layout version {version}")

        self.bucket_size_in_pages = bucket_size
        self._num_allocated = num_allocated
        self._sizes = list(_SIZES.unpack_from(header, _SIZES_OFFSET))
        self._allocations = bytearray(header[_BUCKETS_OFFSET:_HEADER_SIZE])

        for bucket in range(num_allocated):
            owner = self._allocations[bucket]
            if owner == UNALLOCATED_BUCKET:
                raise MemoryLayoutError(f"Bucket {bucket} is counted but unowned")
            self._buckets[owner].append(bucket)
        logger.debug(
            "Loaded memory manager: %d buckets of %d pages",
            num_allocated,
            bucket_size,
        )

    def _save_header(self) -> None:
        header = bytearray(_HEADER_SIZE)
        _HEADER_PREFIX.pack_into(
            header,
            0,
            MANAGER_MAGIC,
            MANAGER_LAYOUT_VERSION,
            self._num_allocated,
            self.bucket_size_in_pages,
        )
        _SIZES.pack_into(header, _SIZES_OFFSET, *self._sizes)
        header[_BUCKETS_OFFSET:_HEADER_SIZE] = self._allocations
        self.memory.write(0, bytes(header))

    def get(self, memory_id: MemoryId) -> VirtualMemory:
        """Return the virtual memory for ``memory_id``."""
        return VirtualMemory(self, memory_id)

    def size_of(self, memory_id: MemoryId) -> int:
        return self._sizes[memory_id.value]

    def grow_memory(self, memory_id: MemoryId, pages: int) -> int:
        """Grow one virtual memory, allocating buckets as needed.

        Returns:
            The previous size in pages, or -1 if there are no buckets left or
            the physical memory cannot grow.
        """
        mid = memory_id.value
        previous = self._sizes[mid]
        new_size = previous + pages
        bucket_size = self.bucket_size_in_pages

        required = -(-new_size // bucket_size)
        missing = required - len(self._buckets[mid])
        if missing > 0:
            if self._num_allocated + missing > MAX_NUM_BUCKETS:
                return -1
            needed_pages = BUCKETS_OFFSET_IN_PAGES + (self._num_allocated + missing) * bucket_size
            shortfall = needed_pages - self.memory.size()
            if shortfall > 0 and self.memory.grow(shortfall) == -1:
                return -1
            for _ in range(missing):
                bucket = self._num_allocated
                self._allocations[bucket] = mid
                self._buckets[mid].append(bucket)
                self._num_allocated += 1
                logger.debug("Allocated bucket %d to memory %d", bucket, mid)

        self._sizes[mid] = new_size
        self._save_header()
        return previous

    def _physical_offset(self, memory_id: MemoryId, offset: int) -> tuple[int, int]:
        """Map a virtual offset to (physical offset, bytes left in that bucket)."""
        bucket_bytes = self.bucket_size_in_pages * PAGE_SIZE
        index, within = divmod(offset, bucket_bytes)
        bucket = self._buckets[memory_id.value][index]
        start = BUCKETS_OFFSET_IN_PAGES * PAGE_SIZE + bucket * bucket_bytes
        return start + within, bucket_bytes - within

    def read_memory(self, memory_id: MemoryId, offset: int, length: int) -> bytes:
        _check_bounds(offset, length, self._sizes[memory_id.value])
        chunks = []
        while length > 0:
            physical, room = self._physical_offset(memory_id, offset)
            n = min(length, room)
            chunks.append(self.memory.read(physical, n))
            offset += n
            length -= n
        return b"".join(chunks)

    def write_memory(self, memory_id: MemoryId, offset: int, data: bytes) -> None:
        _check_bounds(offset, len(data), self._sizes[memory_id.value])
        view = memoryview(data)
        while view:
            physical, room = self._physical_offset(memory_id, offset)
            n = min(len(view), room)
            self.memory.write(physical, bytes(view[:n]))
            offset += n
            view = view[n:]


class VirtualMemory:
    """One MemoryId's slice of a MemoryManager, usable as a plain Memory."""

    def __init__(self, manager: MemoryManager, memory_id: MemoryId) -> None:
        self.manager = manager
        self.memory_id = memory_id

    def size(self) -> int:
        return self.manager.size_of(self.memory_id)

    def grow(self, pages: int) -> int:
        return self.manager.grow_memory(self.memory_id, pages)

    def read(self, offset: int, length: int) -> bytes:
        return self.manager.read_memory(self.memory_id, offset, length)

    def write(self, offset: int, data: bytes) -> None:
        self.manager.write_memory(self.memory_id, offset, data)
