"""
Local file source: the resumable unit is the file handle, never its bytes
"""
import logging
import mimetypes
from pathlib import Path
from typing import Iterator, Optional, Union

from ..core.exceptions import SourceReadError, SourceUnavailableError

logger = logging.getLogger(__name__)

READ_BLOCK_SIZE = 65536  # 64KB


class FileSource:
    """Reads byte ranges from a file on disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        if not self.path.is_file():
            raise SourceUnavailableError(f"File not found: {self.path}")

        stat = self.path.stat()
        self.size = stat.st_size
        self.mtime = stat.st_mtime

    @property
    def name(self) -> str:
        return self.path.name

    def guess_content_type(self) -> str:
        content_type, _ = mimetypes.guess_type(self.path.name)
        return content_type or "application/octet-stream"

    def verify(self, expected_size: Optional[int] = None) -> None:
        """Raise SourceUnavailableError if the file vanished or changed size."""
        try:
            stat = self.path.stat()
        except OSError as e:
            raise SourceUnavailableError(
                f"Cannot resume: source {self.path} is unavailable ({e})"
            ) from e

        expected = self.size if expected_size is None else expected_size
        if stat.st_size != expected:
            raise SourceUnavailableError(
                f"Cannot resume: source {self.path} is {stat.st_size} bytes, expected {expected}"
            )

    def read_range(self, start: int, end: int) -> bytes:
        """Read exactly [start, end). Short reads are integrity errors."""
        length = end - start
        try:
            with open(self.path, "rb") as f:
                f.seek(start)
                data = f.read(length)
        except OSError as e:
            logger.error(f"❌ Failed to read {self.path} [{start}:{end}): {e}")
            raise SourceReadError(f"Cannot read {self.path} [{start}:{end}): {e}") from e

        if len(data) != length:
            raise SourceReadError(
                f"Short read from {self.path} [{start}:{end}): got {len(data)} bytes"
            )
        return data

    def iter_blocks(self, block_size: int = READ_BLOCK_SIZE) -> Iterator[bytes]:
        """Stream the whole file in fixed-size blocks."""
        total = 0
        try:
            with open(self.path, "rb") as f:
                while True:
                    block = f.read(block_size)
                    if not block:
                        break
                    total += len(block)
                    yield block
        except OSError as e:
            raise SourceReadError(f"Cannot read {self.path}: {e}") from e

        if total != self.size:
            raise SourceReadError(
                f"{self.path} changed while reading: read {total} bytes, expected {self.size}"
            )
