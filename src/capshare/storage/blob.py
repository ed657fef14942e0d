"""Blob store clients.

Encrypted payloads live off-ledger, addressed by an opaque reference:
``put(bytes) -> reference`` and ``get(reference) -> bytes``.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from typing import Any, Protocol, runtime_checkable

import aiohttp

from ..config import TransferConfig
from ..defaults import BLOB_TIMEOUT_SECONDS
from ..errors import FetchError, InsufficientFunds, UploadError, is_storage_funds_error
from ..framing import FileHeader, frame

logger = logging.getLogger(__name__)


@runtime_checkable
class BlobStore(Protocol):
    """Where encrypted payloads are kept."""

    async def put(self, data: bytes) -> str:
        """Store bytes and return their reference."""
        ...

    async def get(self, reference: str) -> bytes:
        """Return the bytes stored under a reference."""
        ...


def parse_upload_response(data: Any) -> str:
    """Extract the blob reference from a publisher reply.

    Raises:
        InsufficientFunds: If the publisher reports it cannot pay for storage
        UploadError: If the reply carries an error or no reference
    """
    if not isinstance(data, dict):
        raise UploadError("Malformed upload response")

    error = data.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else str(error)
        message = message or "Failed to upload blob"
        if is_storage_funds_error(message):
            raise InsufficientFunds(f"Blob publisher out of funds: {message}")
        raise UploadError(message)

    blob_id = (data.get("newlyCreated") or {}).get("blobObject", {}).get("blobId") or (
        data.get("alreadyCertified") or {}
    ).get("blobId")
    if not blob_id:
        raise UploadError("No blob reference returned by the publisher")
    return blob_id


class HttpBlobStore:
    """Blob store reached through a publisher (writes) and an aggregator (reads)."""

    def __init__(
        self,
        publisher_url: str,
        aggregator_url: str,
        epochs: int | None = None,
        timeout: float = BLOB_TIMEOUT_SECONDS,
    ) -> None:
        if not publisher_url or not aggregator_url:
            raise ValueError("Both publisher and aggregator URLs are required")
        self.publisher_url = publisher_url.rstrip("/")
        self.aggregator_url = aggregator_url.rstrip("/")
        self.epochs = epochs
        self.timeout = timeout

    async def put(self, data: bytes) -> str:
        url = f"{self.publisher_url}/v1/blobs"
        params = {"epochs": str(self.epochs)} if self.epochs else None
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.put(
                    url,
                    data=bytes(data),
                    params=params,
                    headers={"Content-Type": "application/octet-stream"},
                ) as resp:
                    text = await resp.text()
                    status = resp.status
        except aiohttp.ClientError as e:
            raise UploadError(f"Connection error: {e}") from e
        except asyncio.TimeoutError as e:
            raise UploadError("Upload timed out") from e

        try:
            body = json.loads(text)
        except json.JSONDecodeError:
            body = None

        if status >= 400 and not (isinstance(body, dict) and body.get("error")):
            if is_storage_funds_error(text):
                raise InsufficientFunds(f"Blob publisher out of funds: {text}")
            raise UploadError(f"Publisher returned HTTP {status}: {text[:200]}")

        reference = parse_upload_response(body)
        logger.info(f"Uploaded {len(data)} bytes as blob {reference}")
        return reference

    async def get(self, reference: str) -> bytes:
        url = f"{self.aggregator_url}/v1/blobs/{reference}"
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as resp:
                    if resp.status == 404:
                        raise FetchError(f"Blob {reference} not found")
                    if resp.status != 200:
                        raise FetchError(f"Aggregator returned HTTP {resp.status} for {reference}")
                    return await resp.read()
        except aiohttp.ClientError as e:
            raise FetchError(f"Connection error: {e}") from e
        except asyncio.TimeoutError as e:
            raise FetchError(f"Fetching {reference} timed out") from e


class LocalBlobStore:
    """Stand-in blob store used when remote storage is skipped.

    References are synthesized locally and bytes stay in process memory.
    Unknown references answer with a synthesized placeholder file.
    """

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self.put_count = 0
        self.get_count = 0

    async def put(self, data: bytes) -> str:
        self.put_count += 1
        digest = hashlib.sha256(data).hexdigest()[:16]
        reference = f"local-blob-{int(time.time() * 1000)}-{digest}"
        self._blobs[reference] = bytes(data)
        logger.info(f"Stored {len(data)} bytes locally as {reference} (remote storage skipped)")
        return reference

    async def get(self, reference: str) -> bytes:
        self.get_count += 1
        stored = self._blobs.get(reference)
        if stored is not None:
            return stored
        logger.info(f"Synthesizing placeholder content for unknown local blob {reference}")
        content = f"This is placeholder content for: {reference}\n".encode()
        return frame(content, FileHeader(name=f"{reference}.txt", type="text/plain", size=len(content)))


def select_blob_store(
    config: TransferConfig,
    remote: BlobStore | None = None,
    local: LocalBlobStore | None = None,
) -> BlobStore:
    """Pick the blob store a pipeline should use under ``config``.

    Raises:
        ValueError: If remote storage is required but none was given
    """
    if config.skip_remote_storage:
        return local if local is not None else LocalBlobStore()
    if remote is None:
        raise ValueError("A remote blob store is required unless skip_remote_storage is set")
    return remote
