"""Source image download for flyer parsing and image extraction."""

from __future__ import annotations

import io
from dataclasses import dataclass

import httpx
import structlog
from PIL import Image

from flyer_pipeline.config import settings
from flyer_pipeline.errors import PipelineError, TransientError, ValidationError

logger = structlog.get_logger()


@dataclass(frozen=True)
class DownloadedImage:
    data: bytes
    mime_type: str
    width: int
    height: int


async def fetch_image(
    client: httpx.AsyncClient, url: str, timeout: float | None = None
) -> DownloadedImage:
    """Download and validate one image.

    Timeouts, network errors, 429 and 5xx raise TransientError; other 4xx,
    a non-image content type, or bytes PIL cannot decode are terminal.
    """
    timeout = timeout or settings.image_download_timeout_seconds
    try:
        response = await client.get(url, timeout=timeout, follow_redirects=True)
    except httpx.TimeoutException as exc:
        raise TransientError(f"Timeout downloading image: {url[:100]}") from exc
    except httpx.RequestError as exc:
        raise TransientError(
            f"Network error downloading image: {url[:100]}: {type(exc).__name__}"
        ) from exc

    if response.status_code >= 400:
        # 429 is throttling; other 4xx will not get better on retry
        retryable = response.status_code >= 500 or response.status_code == 429
        raise PipelineError(
            f"HTTP {response.status_code} downloading image: {url[:100]}",
            retryable=retryable,
        )

    content_type = response.headers.get("content-type", "").split(";")[0].strip()
    if content_type and not content_type.startswith("image/"):
        raise ValidationError(f"Expected image content-type, got: {content_type}")

    try:
        with Image.open(io.BytesIO(response.content)) as img:
            img.load()  # full decode catches truncated downloads
            width, height = img.size
            mime_type = content_type or Image.MIME.get(img.format or "", "image/jpeg")
    except Exception as exc:
        raise ValidationError(f"Downloaded image is corrupt: {url[:100]}") from exc

    logger.info(
        "image_downloaded", url=url[:100], size_bytes=len(response.content), width=width, height=height
    )
    return DownloadedImage(data=response.content, mime_type=mime_type, width=width, height=height)


async def download_image(url: str, timeout: float | None = None) -> DownloadedImage:
    async with httpx.AsyncClient() as client:
        return await fetch_image(client, url, timeout)
