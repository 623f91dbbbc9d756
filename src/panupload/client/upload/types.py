"""Shared types for the upload engine.

This module provides:
- UploadPhase: the protocol step an upload failed in
- UploadError and subclasses: typed failures carrying the local path and phase
- Deduped, NeedsUpload: outcome of the dedup check
- TransferProgress: progress information passed to callbacks
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Union

from panupload.client.api import RemoteObject
from panupload.client.state import UploadProgress
from panupload.core.chunking import ChunkPlan


class UploadPhase(str, Enum):
    """Protocol step of an upload."""

    PREPARE = "prepare"  # local fingerprinting, before any network call
    PROBE = "probe"
    OPEN_SESSION = "open_session"
    PUT_CHUNK = "put_chunk"
    FINALIZE = "finalize"


class UploadError(Exception):
    """Upload of a local file failed.

    Attributes:
        local_path: File that was being uploaded.
        phase: Protocol step that failed.
    """

    def __init__(self, local_path: Path, phase: UploadPhase, detail: str) -> None:
        self.local_path = Path(local_path)
        self.phase = phase
        self.detail = detail
        super().__init__(f"{phase.value} failed for {self.local_path}: {detail}")


class LocalIOError(UploadError):
    """Local file is missing or unreadable. Not worth retrying."""


class EmptyFileError(LocalIOError):
    """Zero-byte files are never uploaded."""


class ProgressConflictError(UploadError):
    """Another transfer of the same content replaced or finished this upload's record."""


class RemoteProtocolError(UploadError):
    """Remote answered with an error or an unexpected response."""


class RemoteTransportError(UploadError):
    """Remote could not be reached or timed out."""


@dataclass
class Deduped:
    """The remote already stores identical content."""

    remote: RemoteObject


@dataclass
class NeedsUpload:
    """The content has to be transferred."""

    progress: UploadProgress
    plan: ChunkPlan


ProbeResult = Union[Deduped, NeedsUpload]


@dataclass
class TransferProgress:
    """Progress information for an upload."""

    file_path: str
    file_size: int
    current_chunk: int
    total_chunks: int
    bytes_transferred: int

    @property
    def percent(self) -> float:
        """Get progress percentage."""
        if self.total_chunks == 0:
            return 100.0
        return (self.current_chunk / self.total_chunks) * 100


# Type alias for progress callback
ProgressCallback = Callable[[TransferProgress], None]
