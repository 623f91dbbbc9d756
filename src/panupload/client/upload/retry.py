"""Retry policy for callers of the upload engine.

The engine itself never retries. Because uploads resume from the progress
store, retrying is simply calling upload() again; this module does that with
exponential backoff.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from panupload.client.api import RemoteObject
from panupload.client.upload.session import TransferSession
from panupload.client.upload.types import RemoteProtocolError, RemoteTransportError

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    RemoteTransportError,
    RemoteProtocolError,
)


def upload_with_retry(
    session: TransferSession,
    local_path: Path,
    destination_path: str,
    display_name: str | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    sleep: Callable[[float], None] = time.sleep,
) -> RemoteObject:
    """Upload a file, re-invoking the session on remote failures.

    Local errors (missing, empty or unreadable files) are raised at once.

    Args:
        session: Session to upload with.
        local_path: File to upload.
        destination_path: Remote directory to upload into.
        display_name: Remote file name (defaults to the local name).
        max_retries: Maximum number of retries after the first attempt.
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.
        sleep: Function used to wait between attempts.

    Returns:
        Descriptor of the stored remote object.

    Raises:
        UploadError: The last error if all retries fail, or any local error.
    """
    backoff = initial_backoff

    for attempt in range(max_retries + 1):
        try:
            return session.upload(local_path, destination_path, display_name)
        except RETRYABLE_EXCEPTIONS as e:
            if attempt == max_retries:
                logger.error(f"All {max_retries} retries failed for {local_path}: {e}")
                raise

            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                f"Retrying in {backoff:.1f}s..."
            )
            sleep(backoff)
            backoff = min(backoff * backoff_multiplier, max_backoff)

    raise RuntimeError("Unexpected retry loop exit")
