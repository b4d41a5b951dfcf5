"""Image blob storage backends (Vercel Blob or local disk)."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from config import require_blob_token, settings

logger = logging.getLogger(__name__)


class BlobStoreError(RuntimeError):
    """Raised when a blob could not be stored."""


@dataclass(frozen=True)
class BlobUploadResult:
    url: str
    key: str
    size: int
    content_type: str


def _safe_path(path: str) -> str:
    parts = [part for part in (path or "").replace("\\", "/").split("/") if part not in ("", ".", "..")]
    cleaned = [
        "".join(ch if ch.isalnum() or ch in {"-", "_", "."} else "_" for ch in part)
        for part in parts
    ]
    if not cleaned:
        raise BlobStoreError("Blob path is empty.")
    return "/".join(cleaned)


class BlobStore(ABC):
    @abstractmethod
    async def upload(self, data: bytes, path: str, content_type: str) -> BlobUploadResult:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    """Stores blobs under ``BLOB_LOCAL_DIR`` and serves them from ``BLOB_PUBLIC_BASE_URL``."""

    def __init__(self, root: Optional[str] = None, public_base_url: Optional[str] = None) -> None:
        self.root = Path(root or settings.BLOB_LOCAL_DIR)
        self.public_base_url = (public_base_url or settings.BLOB_PUBLIC_BASE_URL).rstrip("/")

    def _write(self, destination: Path, data: bytes) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)

    async def upload(self, data: bytes, path: str, content_type: str) -> BlobUploadResult:
        key = _safe_path(path)
        destination = self.root / key
        try:
            await asyncio.to_thread(self._write, destination, data)
        except OSError as exc:
            logger.error("Failed to write blob %s: %s", key, exc)
            raise BlobStoreError(f"Failed to store {key}") from exc

        logger.info("Blob stored key=%s size=%s", key, len(data))
        return BlobUploadResult(
            url=f"{self.public_base_url}/{key}",
            key=key,
            size=len(data),
            content_type=content_type,
        )

    async def delete(self, key: str) -> None:
        try:
            target = self.root / _safe_path(key)
            await asyncio.to_thread(target.unlink, True)
            logger.info("Blob deleted key=%s", key)
        except (OSError, BlobStoreError) as exc:
            logger.warning("Failed to delete blob %s: %s", key, exc)


class VercelBlobStore(BlobStore):
    """Vercel Blob REST client (public access, content type preserved)."""

    api_version = "7"

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: Optional[str] = None,
        *,
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.token = token or require_blob_token()
        self.api_url = (api_url or settings.BLOB_API_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _headers(self) -> dict:
        return {
            "authorization": f"Bearer {self.token}",
            "x-api-version": self.api_version,
        }

    async def upload(self, data: bytes, path: str, content_type: str) -> BlobUploadResult:
        key = _safe_path(path)
        headers = {
            **self._headers(),
            "x-content-type": content_type,
            "x-add-random-suffix": "0",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.put(f"{self.api_url}/{key}", content=data, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Failed to upload blob %s: %s", key, exc)
            raise BlobStoreError(f"Failed to upload {key} to storage") from exc

        url = payload.get("url")
        if not url:
            raise BlobStoreError(f"Blob upload for {key} returned no url")
        logger.info("Blob uploaded key=%s url=%s", payload.get("pathname", key), url)
        return BlobUploadResult(
            url=url,
            key=payload.get("pathname") or key,
            size=int(payload.get("size") or len(data)),
            content_type=payload.get("contentType") or content_type,
        )

    async def delete(self, key: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    f"{self.api_url}/delete",
                    json={"urls": [key]},
                    headers=self._headers(),
                )
                response.raise_for_status()
            logger.info("Blob deleted key=%s", key)
        except httpx.HTTPError as exc:
            logger.warning("Failed to delete blob %s: %s", key, exc)


def get_blob_store() -> BlobStore:
    if settings.BLOB_BACKEND == "vercel":
        return VercelBlobStore()
    return LocalBlobStore()
