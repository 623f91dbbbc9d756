"""Fixed-size chunk planning for panupload.

A file that fits in one chunk is sent whole ("whole shot"); anything larger
is split into fixed-size chunks where only the last one may be shorter.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO

CHUNK_SIZE = 4 * 1024 * 1024  # 4 MiB


@dataclass(frozen=True)
class ChunkSpan:
    """A contiguous byte range of a file transferred as one request."""

    index: int
    offset: int
    size: int

    @property
    def end(self) -> int:
        """Return the offset one past the last byte of this span."""
        return self.offset + self.size


@dataclass(frozen=True)
class ChunkPlan:
    """How a file of a given size is split for transfer."""

    total_size: int
    chunk_size: int
    chunk_count: int

    @property
    def whole_shot(self) -> bool:
        """True when the file is sent as a single chunk."""
        return self.chunk_count == 1

    def span(self, index: int) -> ChunkSpan:
        """Return the span of chunk `index`.

        Raises:
            IndexError: If index is outside the plan.
        """
        if not 0 <= index < self.chunk_count:
            raise IndexError(f"Chunk index {index} out of range (0..{self.chunk_count - 1})")
        offset = index * self.chunk_size
        return ChunkSpan(
            index=index,
            offset=offset,
            size=min(self.chunk_size, self.total_size - offset),
        )

    def chunks(self) -> Iterator[ChunkSpan]:
        """Yield every span in index order."""
        for index in range(self.chunk_count):
            yield self.span(index)


def plan_chunks(total_size: int, chunk_size: int = CHUNK_SIZE) -> ChunkPlan:
    """Decide how a file of `total_size` bytes is transferred.

    Args:
        total_size: File size in bytes.
        chunk_size: Maximum bytes per chunk.

    Returns:
        ChunkPlan with the chunk count. A file of exactly `chunk_size`
        bytes is a single whole-shot chunk.

    Raises:
        ValueError: If either size is not positive.
    """
    if total_size <= 0:
        raise ValueError(f"total_size must be positive, got {total_size}")
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    chunk_count = -(-total_size // chunk_size)
    return ChunkPlan(total_size=total_size, chunk_size=chunk_size, chunk_count=chunk_count)


def read_chunk(f: BinaryIO, span: ChunkSpan) -> bytes:
    """Read exactly one span from an open binary file.

    Raises:
        OSError: If the file is shorter than the span (truncated since planning).
    """
    f.seek(span.offset)
    data = f.read(span.size)
    if len(data) != span.size:
        raise OSError(
            f"Short read for chunk {span.index}: expected {span.size} bytes, got {len(data)}"
        )
    return data
