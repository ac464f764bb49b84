"""Durable media storage.

Provider URLs expire, so every generated asset is downloaded once and
re-uploaded; the stored URL is the system of record.

    MediaFetcher        Downloads a provider result.
    HttpBlobStorage     PUTs bytes to a blob service and returns its public URL.
    LocalBlobStorage    Writes to a directory (development and tests).
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx

from atelier_engine.domain.enums import MediaType
from atelier_engine.domain.exceptions import ProviderError
from atelier_engine.logging_config import get_logger

logger = get_logger(__name__)

CONTENT_TYPES = {MediaType.VIDEO: "video/mp4", MediaType.IMAGE: "image/png"}
EXTENSIONS = {MediaType.VIDEO: "mp4", MediaType.IMAGE: "png"}


def blob_key(agent_id: str, media_type: str) -> str:
    """Storage path for one asset: atelier/<agent>/<epoch-ms>.<ext>."""
    extension = EXTENSIONS.get(MediaType(media_type), "bin")
    return f"atelier/{agent_id}/{int(time.time() * 1000)}.{extension}"


@runtime_checkable
class BlobStorage(Protocol):
    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under key and return a public URL."""
        ...


class MediaFetcher:
    """Download generated media from the provider's temporary URL."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._client = client
        self._timeout = timeout

    async def fetch(self, url: str) -> bytes:
        if self._client is not None:
            response = await self._client.get(url, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(url, follow_redirects=True)
        if not response.is_success:
            raise ProviderError(
                f"Failed to fetch generated media ({response.status_code})",
                status_code=response.status_code,
            )
        return response.content


class HttpBlobStorage:
    """Blob service that accepts `PUT <base>/<key>` and answers {"url": ...}."""

    def __init__(
        self,
        upload_url: str,
        token: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._upload_url = upload_url.rstrip("/")
        self._token = token
        self._client = client
        self._timeout = timeout

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "x-content-type": content_type,
            "x-add-random-suffix": "0",
        }
        url = f"{self._upload_url}/{key}"
        if self._client is not None:
            response = await self._client.put(url, content=data, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.put(url, content=data, headers=headers)
        response.raise_for_status()
        public_url = response.json()["url"]
        logger.info("storage.uploaded", key=key, size=len(data))
        return public_url


class LocalBlobStorage:
    """Writes blobs under a local directory and serves them from a base URL."""

    def __init__(self, directory: str | Path, public_base_url: str) -> None:
        self._directory = Path(directory)
        self._public_base_url = public_base_url.rstrip("/")

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._directory / key
        await asyncio.to_thread(self._write, path, data)
        logger.debug("storage.written", path=str(path), content_type=content_type)
        return f"{self._public_base_url}/{key}"

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
