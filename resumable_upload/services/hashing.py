"""
Content digests for whole files and single chunks
"""
import hashlib

from ..core.config import settings
from ..core.exceptions import PlanningError
from .source import FileSource


def new_hasher(algorithm: str = settings.HASH_ALGORITHM):
    """hashlib object for ``algorithm``; unknown names are planning errors."""
    try:
        return hashlib.new(algorithm.lower())
    except (ValueError, TypeError, AttributeError) as e:
        raise PlanningError(f"Unsupported hash algorithm: {algorithm!r}") from e


def hash_bytes(data: bytes, algorithm: str = settings.HASH_ALGORITHM) -> str:
    """Calculate hash of a chunk."""
    hasher = new_hasher(algorithm)
    hasher.update(data)
    return hasher.hexdigest()


def hash_file(source: FileSource, algorithm: str = settings.HASH_ALGORITHM) -> str:
    """
    Calculate hash of the entire file.

    Streams 64KB blocks so large files never sit in memory. Read failures
    surface as SourceReadError, never as a digest of partial data.
    """
    hasher = new_hasher(algorithm)
    for block in source.iter_blocks():
        hasher.update(block)
    return hasher.hexdigest()
