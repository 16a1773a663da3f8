"""Cloudflare R2 object store (S3-compatible) for extracted product images.

Keys follow ``flyers/{flyer_id}/items/{item_id}/{variant}.webp``.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import boto3
import structlog
from botocore.config import Config

from flyer_pipeline.config import settings

logger = structlog.get_logger()


class ObjectStore(Protocol):
    async def upload(self, data: bytes, path: str, content_type: str = "image/webp") -> str:
        """Store ``data`` at ``path`` and return its public URL."""


def build_client() -> Any:
    """Create an S3 client pointed at Cloudflare R2."""
    return boto3.client(
        "s3",
        endpoint_url=f"https://{settings.r2_account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=settings.r2_access_key_id,
        aws_secret_access_key=settings.r2_secret_access_key,
        config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
        region_name="auto",
    )


class R2ObjectStore:
    def __init__(
        self,
        client: Any = None,
        bucket: str | None = None,
        public_base_url: str | None = None,
    ) -> None:
        self._client = client
        self._bucket = bucket or settings.r2_bucket_name
        self._public_base_url = (public_base_url or settings.r2_public_base_url).rstrip("/")

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = build_client()
        return self._client

    def public_url(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        return f"https://{settings.r2_account_id}.r2.cloudflarestorage.com/{self._bucket}/{key}"

    def upload_object(self, key: str, data: bytes, content_type: str = "image/webp") -> str:
        """Blocking upload. Returns the key."""
        self.client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            CacheControl="public, max-age=31536000, immutable",
        )
        logger.info("r2_upload", key=key, size=len(data), content_type=content_type)
        return key

    async def upload(self, data: bytes, path: str, content_type: str = "image/webp") -> str:
        key = await asyncio.to_thread(self.upload_object, path, data, content_type)
        return self.public_url(key)

    def head_bucket(self) -> None:
        self.client.head_bucket(Bucket=self._bucket)
