"""Blob storage for message media."""

import asyncio
import mimetypes
import uuid
from pathlib import Path
from typing import Protocol

import httpx

from ..errors import SyncError
from ..logging_config import get_logger

logger = get_logger(__name__)

MEDIA_PREFIX = "chat_media"


class IBlobStorage(Protocol):
    """Durable storage for uploaded media."""

    async def upload(self, data: bytes, content_type: str) -> str:
        """Store bytes, return a durable URL."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...


def _object_name(content_type: str) -> str:
    extension = mimetypes.guess_extension(content_type) or ""
    return f"{uuid.uuid4()}{extension}"


class HttpBlobStorage:
    """Uploads media with an HTTP PUT to an object store endpoint."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def upload(self, data: bytes, content_type: str) -> str:
        """PUT the bytes, return the object URL (``Location`` if given)."""
        url = f"{self._base_url}/{MEDIA_PREFIX}/{_object_name(content_type)}"
        try:
            response = await self._client.put(
                url, content=data, headers={"Content-Type": content_type}
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Upload to %s failed: %s", url, e)
            raise SyncError.transport(e) from e

        location = response.headers.get("Location")
        logger.debug("Uploaded %d bytes to %s", len(data), location or url)
        return location or url

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class FileBlobStorage:
    """Stores media in a local directory; URLs are ``file://`` URIs."""

    def __init__(self, media_dir: Path):
        self._media_dir = Path(media_dir)

    async def upload(self, data: bytes, content_type: str) -> str:
        target = self._media_dir / MEDIA_PREFIX / _object_name(content_type)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise SyncError.transport(e) from e
        return target.resolve().as_uri()

    async def close(self) -> None:
        return
