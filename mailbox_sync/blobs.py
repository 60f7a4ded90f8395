"""S3 storage for attachment payloads.

All boto3 calls are wrapped with ``asyncio.to_thread()`` to avoid blocking.
Keys are derived from the owning user, the provider message id and the
MIME part position, so re-ingesting a message overwrites its objects
instead of duplicating them.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import uuid
from collections.abc import AsyncIterator

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from .config import S3Config
from .errors import NetworkError, NotFoundError

logger = structlog.get_logger()

DEFAULT_CHUNK_SIZE = 64 * 1024


class AttachmentBlobStore:
    """Upload attachment bytes and stream them back by key."""

    def __init__(self, config: S3Config) -> None:
        self._config = config
        self._client = None  # type: ignore[assignment]

    async def start(self) -> None:
        """Create the boto3 S3 client."""
        kwargs: dict = {"region_name": self._config.region}
        if self._config.endpoint_url:
            kwargs["endpoint_url"] = self._config.endpoint_url
        self._client = await asyncio.to_thread(boto3.client, "s3", **kwargs)
        logger.info("blob_store_started", bucket=self._config.bucket)

    async def stop(self) -> None:
        self._client = None
        logger.info("blob_store_stopped")

    def build_key(self, user_id: uuid.UUID, provider_message_id: str, position: int, file_name: str) -> str:
        message_hash = hashlib.sha256(provider_message_id.encode("utf-8")).hexdigest()[:16]
        return f"{self._config.prefix}/{user_id}/{message_hash}/{position}_{_sanitize_filename(file_name)}"

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store *data* under *key*; returns the key."""
        if self._client is None:
            raise RuntimeError("S3 client not started")
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._config.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise NetworkError(f"Attachment upload to s3://{self._config.bucket}/{key} failed: {exc}") from exc
        logger.debug("attachment_uploaded", key=key, size=len(data))
        return key

    async def get(self, key: str) -> bytes:
        chunks = [chunk async for chunk in await self.stream(key)]
        return b"".join(chunks)

    async def stream(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Open the object and return an iterator over its bytes in chunks.

        A missing object raises here, before any byte is sent.
        """
        if self._client is None:
            raise RuntimeError("S3 client not started")
        try:
            response = await asyncio.to_thread(
                self._client.get_object,
                Bucket=self._config.bucket,
                Key=key,
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise NotFoundError(f"Attachment content {key} is missing") from exc
            raise NetworkError(f"Attachment download of {key} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise NetworkError(f"Attachment download of {key} failed: {exc}") from exc

        return _read_chunks(response["Body"], chunk_size)


async def _read_chunks(body, chunk_size: int) -> AsyncIterator[bytes]:
    try:
        while True:
            chunk = await asyncio.to_thread(body.read, chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        body.close()


def _sanitize_filename(name: str) -> str:
    """Remove characters unsafe for S3 keys."""
    return re.sub(r"[^\w.\-]", "_", name)[:128] or "attachment"
