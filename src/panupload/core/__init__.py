"""Core module - Hashing, chunk planning, configuration and logging."""

from panupload.core.chunking import (
    CHUNK_SIZE,
    ChunkPlan,
    ChunkSpan,
    plan_chunks,
    read_chunk,
)
from panupload.core.config import (
    PROBE_THRESHOLD,
    RETENTION_SECONDS,
    ServerConfig,
    UploadConfig,
    default_progress_path,
)
from panupload.core.hashing import (
    SLICE_SIZE,
    compute_file_hash,
    compute_prefix_hash,
    get_chunk_hash,
)
from panupload.core.log import setup_logging

__all__ = [
    # Chunking
    "CHUNK_SIZE",
    "ChunkPlan",
    "ChunkSpan",
    "plan_chunks",
    "read_chunk",
    # Config
    "PROBE_THRESHOLD",
    "RETENTION_SECONDS",
    "ServerConfig",
    "UploadConfig",
    "default_progress_path",
    # Hashing
    "SLICE_SIZE",
    "compute_file_hash",
    "compute_prefix_hash",
    "get_chunk_hash",
    # Logging
    "setup_logging",
]
