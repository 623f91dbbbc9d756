"""Remote transfer service for panupload.

This module provides:
- RemoteTransferService: the operations the upload engine needs from a remote
- HTTPTransferClient: an httpx implementation against a generic REST layout
- RemoteObject: object descriptor returned by probe and finalize
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from panupload.core.config import ServerConfig

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed."""


class ProtocolError(APIError):
    """Response was malformed or lacked a required field."""


class TransportError(APIError):
    """Request never got a response (connection failure, timeout)."""


@dataclass
class RemoteObject:
    """Descriptor of a stored remote object."""

    id: str
    path: str
    size: int
    content_hash: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteObject:
        """Create from API response dictionary.

        Raises:
            ProtocolError: If the response has no object id.
        """
        object_id = data.get("id")
        if object_id is None or object_id == "":
            raise ProtocolError(f"Response has no object id: {data!r}")
        try:
            size = int(data.get("size", 0))
        except (TypeError, ValueError):
            raise ProtocolError(f"Invalid object size: {data.get('size')!r}") from None
        return cls(
            id=str(object_id),
            path=str(data.get("path", "")),
            size=size,
            content_hash=data.get("content_hash"),
            raw=dict(data),
        )


class RemoteTransferService(Protocol):
    """Operations the upload engine consumes from the remote side."""

    def probe_existing(
        self,
        content_hash: str,
        slice_hash: str | None,
        size: int,
        path: str,
    ) -> RemoteObject | None:
        """Return the stored object if the content already exists, else None."""
        ...

    def open_session(
        self,
        path: str,
        size: int,
        local_mtime: int,
        chunked: bool,
        chunk_count: int,
    ) -> str:
        """Open an upload session and return its id."""
        ...

    def put_chunk(self, upload_id: str, index: int, data: bytes) -> str:
        """Upload one chunk and return the digest the remote acknowledged."""
        ...

    def finalize(
        self,
        path: str,
        size: int,
        upload_id: str,
        chunk_hashes: list[str],
        local_mtime: int,
    ) -> RemoteObject:
        """Assemble the acknowledged chunks into a stored object."""
        ...


class HTTPTransferClient:
    """HTTP client for a chunked upload endpoint."""

    def __init__(self, config: ServerConfig) -> None:
        """Initialize the transfer client.

        Args:
            config: Server configuration with URL, token and timeout.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={"Authorization": f"Bearer {config.token}"},
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> HTTPTransferClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request.

        Transport failures become TransportError. Any other request failure,
        such as an undecodable body or a redirect loop, becomes ProtocolError.
        """
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e
        except httpx.RequestError as e:
            raise ProtocolError(f"{method} {url} failed: {e}") from e

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError("Invalid or expired token", 401)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", "Unknown error")
            except (ValueError, AttributeError):
                detail = response.text or "Unknown error"
            raise APIError(str(detail), response.status_code)
        return response

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        """Decode a JSON object body."""
        try:
            data = response.json()
        except ValueError:
            raise ProtocolError(
                f"Expected JSON from {response.request.url}, got {response.text[:200]!r}",
                response.status_code,
            ) from None
        if not isinstance(data, dict):
            raise ProtocolError(f"Expected a JSON object, got {data!r}", response.status_code)
        return data

    def probe_existing(
        self,
        content_hash: str,
        slice_hash: str | None,
        size: int,
        path: str,
    ) -> RemoteObject | None:
        """Ask whether identical content is already stored.

        Args:
            content_hash: Digest of the full content.
            slice_hash: Digest of the leading slice, if computed.
            size: File size in bytes.
            path: Remote path the object would be created at.

        Returns:
            The created object descriptor if the content was deduplicated,
            None otherwise.
        """
        response = self._request(
            "POST",
            "/api/uploads/probe",
            json={
                "content_hash": content_hash,
                "slice_hash": slice_hash,
                "size": size,
                "path": path,
            },
        )
        if response.status_code == 404:
            return None
        data = self._json(self._handle_response(response))
        return RemoteObject.from_dict(data)

    def open_session(
        self,
        path: str,
        size: int,
        local_mtime: int,
        chunked: bool,
        chunk_count: int,
    ) -> str:
        """Open an upload session.

        Returns:
            The upload id assigned by the server.
        """
        response = self._handle_response(
            self._request(
                "POST",
                "/api/uploads",
                json={
                    "path": path,
                    "size": size,
                    "local_mtime": local_mtime,
                    "chunked": chunked,
                    "chunk_count": chunk_count,
                },
            )
        )
        upload_id = self._json(response).get("upload_id")
        if not upload_id:
            raise ProtocolError("Open session response has no upload_id", response.status_code)
        return str(upload_id)

    def put_chunk(self, upload_id: str, index: int, data: bytes) -> str:
        """Upload one chunk of an open session.

        Returns:
            The chunk digest acknowledged by the server.
        """
        response = self._handle_response(
            self._request(
                "PUT",
                f"/api/uploads/{upload_id}/chunks/{index}",
                content=data,
                headers={"Content-Type": "application/octet-stream"},
            )
        )
        chunk_hash = self._json(response).get("hash")
        if not chunk_hash:
            raise ProtocolError(
                f"Chunk {index} acknowledgment has no hash", response.status_code
            )
        return str(chunk_hash)

    def finalize(
        self,
        path: str,
        size: int,
        upload_id: str,
        chunk_hashes: list[str],
        local_mtime: int,
    ) -> RemoteObject:
        """Commit an upload session into a stored object.

        Returns:
            Descriptor of the created object.
        """
        response = self._handle_response(
            self._request(
                "POST",
                f"/api/uploads/{upload_id}/commit",
                json={
                    "path": path,
                    "size": size,
                    "chunk_hashes": chunk_hashes,
                    "local_mtime": local_mtime,
                },
            )
        )
        return RemoteObject.from_dict(self._json(response))
