"""Configuration classes for panupload.

This module defines:
- ServerConfig: where the upload endpoint lives and how to reach it
- UploadConfig: engine thresholds and the progress table location
"""

from __future__ import annotations

import hashlib
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from panupload.core.chunking import CHUNK_SIZE
from panupload.core.hashing import DEFAULT_ALGORITHM, SLICE_SIZE

PROBE_THRESHOLD = 1 * 1024 * 1024  # 1 MiB
RETENTION_SECONDS = 24 * 60 * 60

ENV_PREFIX = "PANUPLOAD_"


def default_progress_path() -> Path:
    """Get the default location of the upload progress table."""
    return Path(tempfile.gettempdir()) / "panupload" / "upload-progress.json"


@dataclass
class ServerConfig:
    """Configuration for reaching the upload endpoint.

    The endpoint is resolved once by whoever builds the config and is
    passed explicitly to the transfer session.

    Attributes:
        server_url: Base URL of the server (e.g., "https://upload.example.com").
        token: Bearer token sent with every request.
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS.

        Returns:
            True if server uses HTTPS.
        """
        return self.server_url.startswith("https://")


@dataclass
class UploadConfig:
    """Tunables for the upload engine.

    The defaults match one storage vendor's limits; other transports may
    want different values.

    Attributes:
        chunk_size: Bytes per chunk; files up to this size go in one shot.
        probe_threshold: Files larger than this are probed for dedup first.
        slice_size: Leading bytes hashed for the dedup probe.
        retention_seconds: Age after which a progress record is ignored.
        hash_algorithm: hashlib algorithm for content and slice digests.
        progress_path: JSON file holding in-flight upload progress.
    """

    chunk_size: int = CHUNK_SIZE
    probe_threshold: int = PROBE_THRESHOLD
    slice_size: int = SLICE_SIZE
    retention_seconds: float = RETENTION_SECONDS
    hash_algorithm: str = DEFAULT_ALGORITHM
    progress_path: Path = field(default_factory=default_progress_path)

    def __post_init__(self) -> None:
        """Validate sizes and normalize the progress path."""
        for name in ("chunk_size", "probe_threshold", "slice_size", "retention_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.hash_algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unknown hash algorithm: {self.hash_algorithm}")
        self.progress_path = Path(self.progress_path)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> UploadConfig:
        """Build a config from PANUPLOAD_* environment variables.

        Unset variables keep their defaults.

        Raises:
            ValueError: If a numeric variable is not an integer.
        """
        env = os.environ if environ is None else environ
        kwargs: dict[str, object] = {}

        for name in ("chunk_size", "probe_threshold", "slice_size", "retention_seconds"):
            value = env.get(f"{ENV_PREFIX}{name.upper()}")
            if value:
                try:
                    kwargs[name] = int(value)
                except ValueError:
                    raise ValueError(
                        f"{ENV_PREFIX}{name.upper()} must be an integer, got {value!r}"
                    ) from None

        algorithm = env.get(f"{ENV_PREFIX}HASH_ALGORITHM")
        if algorithm:
            kwargs["hash_algorithm"] = algorithm.lower()

        progress_path = env.get(f"{ENV_PREFIX}PROGRESS_PATH")
        if progress_path:
            kwargs["progress_path"] = Path(progress_path).expanduser()

        return cls(**kwargs)  # type: ignore[arg-type]
