"""panupload - Resumable chunked uploads to remote blob storage."""

from panupload.client.api import (
    APIError,
    HTTPTransferClient,
    RemoteObject,
    RemoteTransferService,
)
from panupload.client.state import ProgressStore, UploadProgress
from panupload.client.upload import (
    LocalIOError,
    ProgressConflictError,
    RemoteProtocolError,
    RemoteTransportError,
    TransferSession,
    UploadError,
    UploadPhase,
    upload_with_retry,
)
from panupload.core.config import ServerConfig, UploadConfig

__version__ = "0.1.0"

__all__ = [
    "APIError",
    "HTTPTransferClient",
    "LocalIOError",
    "ProgressConflictError",
    "ProgressStore",
    "RemoteObject",
    "RemoteProtocolError",
    "RemoteTransferService",
    "RemoteTransportError",
    "ServerConfig",
    "TransferSession",
    "UploadConfig",
    "UploadError",
    "UploadPhase",
    "UploadProgress",
    "upload_with_retry",
]
