"""
Chunk planning: file size + chunk size -> ordered byte ranges
"""
from dataclasses import dataclass
from typing import Iterator, List

from ..core.exceptions import PlanningError


@dataclass(frozen=True)
class Chunk:
    """Byte range [start, end) of the source file"""
    index: int
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class ChunkPlan:
    """
    Ordered chunk layout for one file.

    An empty file plans zero chunks: ceil(0 / chunk_size) == 0, and the
    session goes straight to the completion handshake.
    """
    file_size: int
    chunk_size: int
    total_chunks: int

    def chunk(self, index: int) -> Chunk:
        if index < 0 or index >= self.total_chunks:
            raise PlanningError(
                f"Chunk index {index} out of range (total_chunks={self.total_chunks})"
            )
        start = index * self.chunk_size
        end = min(start + self.chunk_size, self.file_size)
        return Chunk(index=index, start=start, end=end)

    def indices(self) -> List[int]:
        return list(range(self.total_chunks))

    def __iter__(self) -> Iterator[Chunk]:
        for index in range(self.total_chunks):
            yield self.chunk(index)

    def __len__(self) -> int:
        return self.total_chunks


def plan_chunks(file_size: int, chunk_size: int) -> ChunkPlan:
    """Compute the chunk plan. Pure, no I/O."""
    if isinstance(file_size, bool) or not isinstance(file_size, int) or file_size < 0:
        raise PlanningError(f"file_size must be a non-negative integer, got {file_size!r}")
    if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size <= 0:
        raise PlanningError(f"chunk_size must be a positive integer, got {chunk_size!r}")

    total_chunks = (file_size + chunk_size - 1) // chunk_size
    return ChunkPlan(file_size=file_size, chunk_size=chunk_size, total_chunks=total_chunks)
