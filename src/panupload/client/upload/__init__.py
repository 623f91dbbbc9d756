"""Upload engine - Resumable chunked uploads with dedup."""

from panupload.client.upload.retry import upload_with_retry
from panupload.client.upload.session import TransferSession
from panupload.client.upload.types import (
    Deduped,
    EmptyFileError,
    LocalIOError,
    NeedsUpload,
    ProbeResult,
    ProgressCallback,
    ProgressConflictError,
    RemoteProtocolError,
    RemoteTransportError,
    TransferProgress,
    UploadError,
    UploadPhase,
)

__all__ = [
    # Session
    "TransferSession",
    "upload_with_retry",
    # Results
    "Deduped",
    "NeedsUpload",
    "ProbeResult",
    # Progress
    "ProgressCallback",
    "TransferProgress",
    # Errors
    "EmptyFileError",
    "LocalIOError",
    "ProgressConflictError",
    "RemoteProtocolError",
    "RemoteTransportError",
    "UploadError",
    "UploadPhase",
]
