"""Content hashing for panupload.

This module provides:
- Whole-file digests used as the dedup/resume key
- Prefix ("slice") digests used for cheap existence probes
- Chunk digests for in-memory byte ranges
"""

from __future__ import annotations

import hashlib
from pathlib import Path

DEFAULT_ALGORITHM = "sha256"
SLICE_SIZE = 256 * 1024  # 256 KiB
READ_BLOCK_SIZE = 64 * 1024


def get_chunk_hash(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Compute the hex digest of a chunk of data.

    Args:
        data: Raw bytes to hash.
        algorithm: Any name accepted by hashlib.new().

    Returns:
        Hex-encoded digest string.
    """
    return hashlib.new(algorithm, data).hexdigest()


def compute_file_hash(path: Path, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Compute the digest of a whole file.

    Reads the file in blocks so memory use stays constant.

    Args:
        path: Path to the file to hash.
        algorithm: Any name accepted by hashlib.new().

    Returns:
        Hex-encoded digest string.

    Raises:
        OSError: If the file is missing or unreadable.
    """
    hasher = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(READ_BLOCK_SIZE), b""):
            hasher.update(block)
    return hasher.hexdigest()


def compute_prefix_hash(
    path: Path,
    size: int = SLICE_SIZE,
    algorithm: str = DEFAULT_ALGORITHM,
) -> str:
    """Compute the digest of the first `size` bytes of a file.

    Files shorter than `size` are hashed in full.

    Args:
        path: Path to the file to hash.
        size: Number of leading bytes to hash.
        algorithm: Any name accepted by hashlib.new().

    Returns:
        Hex-encoded digest string.

    Raises:
        OSError: If the file is missing or unreadable.
    """
    hasher = hashlib.new(algorithm)
    remaining = size
    with open(path, "rb") as f:
        while remaining > 0:
            block = f.read(min(READ_BLOCK_SIZE, remaining))
            if not block:
                break
            hasher.update(block)
            remaining -= len(block)
    return hasher.hexdigest()
