"""Resumable chunked upload.

This module provides:
- TransferSession: drives one file through probe, open, transfer and finalize

Flow:
    1. Hash the file and load or create its progress record.
    2. Files above the probe threshold are offered to the remote for dedup;
       a hit ends the upload without transferring anything.
    3. Open a session, or reuse the one stored in the progress record.
    4. Send every chunk not yet acknowledged, in index order, persisting
       each acknowledgment before moving on.
    5. Finalize, then drop the progress record.

Any failure leaves the progress record as last persisted, so calling
upload() again resumes at the first unacknowledged chunk.
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from panupload.client.api import (
    APIError,
    HTTPTransferClient,
    RemoteObject,
    RemoteTransferService,
    TransportError,
)
from panupload.client.state import ProgressStore, StaleProgressError
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
    UploadPhase,
)
from panupload.core.chunking import plan_chunks, read_chunk
from panupload.core.config import ServerConfig, UploadConfig

logger = logging.getLogger(__name__)

# Errors a remote implementation may raise when the network is at fault
TRANSPORT_EXCEPTIONS: tuple[type[Exception], ...] = (
    TransportError,
    ConnectionError,
    TimeoutError,
)


@contextmanager
def _remote_call(local_path: Path, phase: UploadPhase) -> Iterator[None]:
    """Translate remote failures into typed upload errors for `phase`."""
    try:
        yield
    except TRANSPORT_EXCEPTIONS as e:
        raise RemoteTransportError(local_path, phase, str(e)) from e
    except APIError as e:
        raise RemoteProtocolError(local_path, phase, str(e)) from e


@contextmanager
def _local_io(local_path: Path, phase: UploadPhase) -> Iterator[None]:
    """Translate local I/O failures into LocalIOError for `phase`."""
    try:
        yield
    except OSError as e:
        raise LocalIOError(local_path, phase, str(e)) from e


@contextmanager
def _progress_update(local_path: Path, phase: UploadPhase) -> Iterator[None]:
    """Translate progress store failures into typed upload errors for `phase`."""
    try:
        yield
    except StaleProgressError as e:
        raise ProgressConflictError(local_path, phase, str(e)) from e
    except OSError as e:
        raise LocalIOError(local_path, phase, str(e)) from e


class TransferSession:
    """Uploads files through a RemoteTransferService with resume support.

    One call to upload() handles one file sequentially. Several sessions
    may share a ProgressStore from different threads as long as they
    upload different content.
    """

    def __init__(
        self,
        remote: RemoteTransferService,
        store: ProgressStore,
        config: UploadConfig | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            remote: Remote transfer service to upload to.
            store: Progress store used for resume.
            config: Engine thresholds (defaults to UploadConfig()).
            progress_callback: Optional callback for progress updates.
        """
        self._remote = remote
        self._store = store
        self._config = config or UploadConfig()
        self._progress_callback = progress_callback
        self._owned_client: HTTPTransferClient | None = None

    @classmethod
    def from_config(
        cls,
        server: ServerConfig,
        config: UploadConfig | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> TransferSession:
        """Create a session talking HTTP to `server`.

        The HTTP client is owned by the session and released by close().
        """
        config = config or UploadConfig()
        store = ProgressStore(config.progress_path, config)
        client = HTTPTransferClient(server)
        session = cls(
            remote=client,
            store=store,
            config=config,
            progress_callback=progress_callback,
        )
        session._owned_client = client
        return session

    def close(self) -> None:
        """Close the HTTP client if this session created it."""
        if self._owned_client is not None:
            self._owned_client.close()
            self._owned_client = None

    def __enter__(self) -> TransferSession:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    @staticmethod
    def remote_path(
        local_path: Path,
        destination_path: str,
        display_name: str | None = None,
    ) -> str:
        """Remote path of the object: destination directory plus file name."""
        return posixpath.join(destination_path, display_name or Path(local_path).name)

    def upload(
        self,
        local_path: Path,
        destination_path: str,
        display_name: str | None = None,
    ) -> RemoteObject:
        """Upload a file, resuming any earlier attempt for the same content.

        Args:
            local_path: File to upload.
            destination_path: Remote directory to upload into.
            display_name: Remote file name (defaults to the local name).

        Returns:
            Descriptor of the stored remote object.

        Raises:
            LocalIOError: If the file is missing, empty or unreadable.
            RemoteProtocolError: If the remote rejected a step or answered
                with an unexpected response.
            RemoteTransportError: If the remote could not be reached.
            ProgressConflictError: If another transfer of the same content
                replaced or finished the progress record mid-upload.
        """
        local_path = Path(local_path)
        remote_path = self.remote_path(local_path, destination_path, display_name)

        result = self.probe(local_path, remote_path)
        if isinstance(result, Deduped):
            return result.remote

        upload_id = self._open_session(local_path, result)
        self._transfer(local_path, upload_id, result)
        return self._finalize(local_path, upload_id, result)

    def probe(self, local_path: Path, remote_path: str) -> ProbeResult:
        """Fingerprint a file and check whether the remote already has it.

        Args:
            local_path: File to upload.
            remote_path: Full remote path of the object.

        Returns:
            Deduped with the stored object, or NeedsUpload with the
            progress record and chunk plan.
        """
        local_path = Path(local_path)

        with _local_io(local_path, UploadPhase.PREPARE):
            size = local_path.stat().st_size
            if size == 0:
                raise EmptyFileError(local_path, UploadPhase.PREPARE, "file is empty")
            progress = self._store.get_or_create(local_path, remote_path)

        plan = plan_chunks(progress.size, progress.chunk_size)

        if progress.size > self._config.probe_threshold:
            logger.debug(f"Probing remote for {remote_path} ({progress.content_hash[:8]}...)")
            with _remote_call(local_path, UploadPhase.PROBE):
                existing = self._remote.probe_existing(
                    progress.content_hash,
                    progress.slice_hash,
                    progress.size,
                    remote_path,
                )
            if existing is not None:
                logger.info(f"Deduplicated {local_path} as {existing.path} (id {existing.id})")
                with _local_io(local_path, UploadPhase.PROBE):
                    self._store.delete(progress.content_hash)
                return Deduped(existing)

        return NeedsUpload(progress=progress, plan=plan)

    def _open_session(self, local_path: Path, need: NeedsUpload) -> str:
        """Open a remote session, reusing the one from an earlier attempt."""
        progress, plan = need.progress, need.plan

        if progress.upload_id:
            logger.debug(f"Reusing upload session {progress.upload_id} for {local_path}")
            return progress.upload_id

        with _remote_call(local_path, UploadPhase.OPEN_SESSION):
            upload_id = self._remote.open_session(
                progress.destination_path,
                progress.size,
                progress.local_mtime,
                not plan.whole_shot,
                plan.chunk_count,
            )
        if not upload_id:
            raise RemoteProtocolError(
                local_path, UploadPhase.OPEN_SESSION, "remote returned no upload id"
            )

        with _progress_update(local_path, UploadPhase.OPEN_SESSION):
            self._store.record_session(
                progress.content_hash, upload_id, progress.destination_path
            )
        logger.debug(
            f"Opened upload session {upload_id} for {local_path} "
            f"({plan.chunk_count} chunk(s))"
        )
        return upload_id

    def _transfer(self, local_path: Path, upload_id: str, need: NeedsUpload) -> None:
        """Send every chunk that has not been acknowledged yet."""
        progress, plan = need.progress, need.plan
        bytes_transferred = 0
        sent = 0

        with _local_io(local_path, UploadPhase.PUT_CHUNK):
            f = open(local_path, "rb")

        with f:
            for span in plan.chunks():
                if span.index in progress.chunk_hashes:
                    logger.debug(f"Skipping acknowledged chunk {span.index}/{plan.chunk_count}")
                else:
                    with _local_io(local_path, UploadPhase.PUT_CHUNK):
                        data = read_chunk(f, span)

                    with _remote_call(local_path, UploadPhase.PUT_CHUNK):
                        chunk_hash = self._remote.put_chunk(upload_id, span.index, data)
                    if not chunk_hash:
                        raise RemoteProtocolError(
                            local_path,
                            UploadPhase.PUT_CHUNK,
                            f"chunk {span.index} was not acknowledged",
                        )

                    with _progress_update(local_path, UploadPhase.PUT_CHUNK):
                        self._store.record_chunk(
                            progress.content_hash, span.index, chunk_hash, upload_id
                        )
                    sent += 1
                    logger.debug(f"Uploaded chunk {span.index} ({chunk_hash[:8]}...)")

                bytes_transferred += span.size
                if self._progress_callback:
                    self._progress_callback(TransferProgress(
                        file_path=progress.destination_path,
                        file_size=progress.size,
                        current_chunk=span.index + 1,
                        total_chunks=plan.chunk_count,
                        bytes_transferred=bytes_transferred,
                    ))

        logger.debug(
            f"Sent {sent} chunk(s), skipped {plan.chunk_count - sent} for {local_path}"
        )

    def _finalize(self, local_path: Path, upload_id: str, need: NeedsUpload) -> RemoteObject:
        """Commit the acknowledged chunks and drop the progress record."""
        progress, plan = need.progress, need.plan

        with _remote_call(local_path, UploadPhase.FINALIZE):
            remote = self._remote.finalize(
                progress.destination_path,
                progress.size,
                upload_id,
                progress.ordered_chunk_hashes(plan.chunk_count),
                progress.local_mtime,
            )
        if remote is None or not remote.id:
            raise RemoteProtocolError(
                local_path, UploadPhase.FINALIZE, "finalize response has no object id"
            )

        with _local_io(local_path, UploadPhase.FINALIZE):
            self._store.delete(progress.content_hash)

        logger.info(
            f"Uploaded {local_path} to {remote.path or progress.destination_path}: "
            f"{plan.chunk_count} chunk(s), id {remote.id}"
        )
        return remote
