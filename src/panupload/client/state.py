"""Durable upload progress for panupload.

This module provides:
- UploadProgress: resume state for one file content
- ProgressStore: JSON-backed table of in-flight uploads keyed by content hash

Architecture:
    The whole table is rewritten on every mutation. It only ever holds one
    record per in-flight upload, so it stays small. A chunk is considered
    done only once record_chunk() has returned, which means a crash loses
    at most the chunk that was in flight.

    Records are trusted for a limited retention window; older ones are
    treated as absent and rebuilt.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from panupload.core.config import UploadConfig
from panupload.core.hashing import compute_file_hash, compute_prefix_hash

logger = logging.getLogger(__name__)


class StaleProgressError(KeyError):
    """The record being updated was deleted or replaced by another transfer."""

    def __init__(self, content_hash: str, reason: str) -> None:
        super().__init__(content_hash)
        self.content_hash = content_hash
        self.reason = reason

    def __str__(self) -> str:
        return f"progress for {self.content_hash[:8]}... {self.reason}"


@dataclass
class UploadProgress:
    """Resume state for one file content.

    Attributes:
        content_hash: Digest of the full file content (identity key).
        destination_path: Remote path the file is uploaded to.
        size: File size in bytes.
        local_mtime: File modification time, whole seconds.
        chunk_size: Chunk size the upload was planned with.
        upload_id: Remote session id, empty until a session is opened.
        slice_hash: Digest of the leading slice, computed for probe-sized files.
        chunk_hashes: Acknowledged chunk digests by chunk index.
        last_touched: Timestamp of the last mutation.
    """

    content_hash: str
    destination_path: str
    size: int
    local_mtime: int
    chunk_size: int
    upload_id: str = ""
    slice_hash: str | None = None
    chunk_hashes: dict[int, str] = field(default_factory=dict)
    last_touched: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadProgress:
        """Create from a persisted dictionary."""
        return cls(
            content_hash=data["content_hash"],
            destination_path=data["destination_path"],
            size=int(data["size"]),
            local_mtime=int(data["local_mtime"]),
            chunk_size=int(data["chunk_size"]),
            upload_id=data.get("upload_id") or "",
            slice_hash=data.get("slice_hash"),
            chunk_hashes={
                int(index): str(chunk_hash)
                for index, chunk_hash in (data.get("chunk_hashes") or {}).items()
            },
            last_touched=float(data.get("last_touched", 0.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "content_hash": self.content_hash,
            "destination_path": self.destination_path,
            "size": self.size,
            "local_mtime": self.local_mtime,
            "chunk_size": self.chunk_size,
            "upload_id": self.upload_id,
            "slice_hash": self.slice_hash,
            "chunk_hashes": {
                str(index): chunk_hash
                for index, chunk_hash in sorted(self.chunk_hashes.items())
            },
            "last_touched": self.last_touched,
        }

    def missing_chunks(self, chunk_count: int) -> list[int]:
        """Indices in range(chunk_count) that have not been acknowledged."""
        return [i for i in range(chunk_count) if i not in self.chunk_hashes]

    def ordered_chunk_hashes(self, chunk_count: int) -> list[str]:
        """Acknowledged chunk digests in index order.

        Raises:
            KeyError: If any chunk in range(chunk_count) is missing.
        """
        return [self.chunk_hashes[i] for i in range(chunk_count)]


class ProgressStore:
    """Persistent table of upload progress keyed by content hash.

    Thread-safe within one process. Several processes sharing one table
    file are not coordinated.
    """

    def __init__(
        self,
        path: Path,
        config: UploadConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Load the progress table.

        Args:
            path: JSON file holding the table (created on first write).
            config: Engine configuration (thresholds, retention, hashing).
            clock: Returns the current time in seconds.
        """
        self._path = Path(path)
        self._config = config or UploadConfig(progress_path=self._path)
        self._clock = clock

        # Guards load-modify-persist sequences
        self._lock = threading.RLock()

        self._records = self.load()
        self.purge_expired()

    @property
    def path(self) -> Path:
        """Location of the table file."""
        return self._path

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, content_hash: object) -> bool:
        return isinstance(content_hash, str) and self.get(content_hash) is not None

    def load(self) -> dict[str, UploadProgress]:
        """Read the whole table from disk.

        A missing or corrupt file yields an empty table; malformed entries
        are dropped individually.
        """
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable progress table {self._path}: {e}")
            return {}

        if not isinstance(raw, dict):
            logger.warning(f"Ignoring malformed progress table {self._path}")
            return {}

        records: dict[str, UploadProgress] = {}
        for content_hash, entry in raw.items():
            try:
                records[content_hash] = UploadProgress.from_dict(entry)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Dropping malformed progress entry {content_hash}: {e}")
        return records

    def _save(self) -> None:
        """Rewrite the whole table atomically."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {key: record.to_dict() for key, record in self._records.items()}
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _is_expired(self, record: UploadProgress) -> bool:
        return self._clock() - record.last_touched > self._config.retention_seconds

    def _matches(self, record: UploadProgress, destination_path: str, size: int) -> bool:
        return (
            record.destination_path == destination_path
            and record.size == size
            and record.chunk_size == self._config.chunk_size
        )

    def get(self, content_hash: str) -> UploadProgress | None:
        """Get a record by content hash.

        Returns:
            The record, or None if missing or older than the retention window.
        """
        with self._lock:
            record = self._records.get(content_hash)
            if record is None or self._is_expired(record):
                return None
            return record

    def get_or_create(self, local_path: Path, destination_path: str) -> UploadProgress:
        """Get the resume record for a file, creating a fresh one if needed.

        An existing record is reused only if it is within the retention
        window and was created for the same destination, size and chunk
        size. Otherwise it is replaced by a record with no chunks.

        Args:
            local_path: File to upload.
            destination_path: Full remote path of the object.

        Returns:
            The persisted record.

        Raises:
            OSError: If the file cannot be read.
        """
        local_path = Path(local_path)
        stat = local_path.stat()
        content_hash = compute_file_hash(local_path, self._config.hash_algorithm)

        # File reads stay outside the lock
        slice_hash = None
        if stat.st_size > self._config.probe_threshold:
            existing = self.get(content_hash)
            if (
                existing is None
                or existing.slice_hash is None
                or not self._matches(existing, destination_path, stat.st_size)
            ):
                slice_hash = compute_prefix_hash(
                    local_path, self._config.slice_size, self._config.hash_algorithm
                )

        with self._lock:
            record = self.get(content_hash)
            if record is not None and not self._matches(record, destination_path, stat.st_size):
                logger.info(
                    f"Discarding progress for {content_hash[:8]}...: "
                    "recorded for a different transfer"
                )
                record = None

            dirty = False
            if record is None:
                record = UploadProgress(
                    content_hash=content_hash,
                    destination_path=destination_path,
                    size=stat.st_size,
                    local_mtime=int(stat.st_mtime),
                    chunk_size=self._config.chunk_size,
                    last_touched=self._clock(),
                )
                self._records[content_hash] = record
                dirty = True
            else:
                logger.info(
                    f"Resuming upload of {destination_path}: "
                    f"{len(record.chunk_hashes)} chunks already acknowledged"
                )

            if record.slice_hash is None and record.size > self._config.probe_threshold:
                if slice_hash is None:
                    # Record changed between the two lookups
                    slice_hash = compute_prefix_hash(
                        local_path, self._config.slice_size, self._config.hash_algorithm
                    )
                record.slice_hash = slice_hash
                dirty = True

            if dirty:
                self._save()
            return record

    def _live_record(self, content_hash: str) -> UploadProgress:
        record = self._records.get(content_hash)
        if record is None:
            raise StaleProgressError(content_hash, "no longer exists")
        return record

    def record_session(
        self,
        content_hash: str,
        upload_id: str,
        destination_path: str | None = None,
    ) -> None:
        """Store the remote session id for a record and persist.

        Args:
            content_hash: Record to update.
            upload_id: Session id returned by the remote.
            destination_path: If given, the record must still belong to
                this destination.

        Raises:
            StaleProgressError: If the record is gone or now belongs to
                another destination. Subclass of KeyError.
        """
        with self._lock:
            record = self._live_record(content_hash)
            if destination_path is not None and record.destination_path != destination_path:
                raise StaleProgressError(
                    content_hash, f"was replaced by an upload to {record.destination_path}"
                )
            record.upload_id = upload_id
            record.last_touched = self._clock()
            self._save()

    def record_chunk(
        self,
        content_hash: str,
        index: int,
        chunk_hash: str,
        upload_id: str | None = None,
    ) -> None:
        """Mark chunk `index` as acknowledged and persist before returning.

        Args:
            content_hash: Record to update.
            index: Acknowledged chunk index.
            chunk_hash: Digest the remote acknowledged the chunk with.
            upload_id: If given, the record must still belong to this session.

        Raises:
            StaleProgressError: If the record is gone or now belongs to
                another session. Subclass of KeyError.
        """
        with self._lock:
            record = self._live_record(content_hash)
            if upload_id is not None and record.upload_id != upload_id:
                raise StaleProgressError(
                    content_hash, f"now belongs to session {record.upload_id or '(none)'}"
                )
            record.chunk_hashes[index] = chunk_hash
            record.last_touched = self._clock()
            self._save()

    def delete(self, content_hash: str) -> None:
        """Remove a record (no-op if absent)."""
        with self._lock:
            if self._records.pop(content_hash, None) is not None:
                self._save()

    def purge_expired(self) -> int:
        """Drop records older than the retention window.

        Returns:
            Number of records dropped.
        """
        with self._lock:
            expired = [key for key, record in self._records.items() if self._is_expired(record)]
            for key in expired:
                del self._records[key]
            if expired:
                logger.debug(f"Purged {len(expired)} expired upload records")
                self._save()
            return len(expired)
