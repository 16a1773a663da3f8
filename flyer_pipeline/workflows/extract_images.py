"""Image workflow: clean product images for every item of a flyer.

Each item is its own memoized step (``extract-image:{item_id}``), so a
redelivered event only redoes the items that have not finished. One item
failing is recorded on that item; the flyer's image status is ``failed``
only when every item failed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from flyer_pipeline.activities.product_images import ProductImageExtractor
from flyer_pipeline.config import settings
from flyer_pipeline.engine.executor import WorkflowContext
from flyer_pipeline.engine.retry import RetryPolicy
from flyer_pipeline.errors import NotFoundError, StepFailed, truncate_reason
from flyer_pipeline.models.contracts import (
    EXTRACT_IMAGES_EVENT,
    ExtractImagesEvent,
    ImageOutcome,
    ImageTarget,
)
from flyer_pipeline.models.entities import ImageExtractionSummary
from flyer_pipeline.store.repository import Repository
from flyer_pipeline.utils.http import DownloadedImage, download_image

logger = structlog.get_logger()

Downloader = Callable[[str, float | None], Awaitable[DownloadedImage]]

DEFAULT_CONCURRENCY = 4


class ExtractImagesWorkflow:
    name = "extract-images"
    event_name = EXTRACT_IMAGES_EVENT
    event_model = ExtractImagesEvent
    deadline_seconds: float | None = 900.0  # under MAX_RUN_DEADLINE_SECONDS

    def __init__(
        self,
        repo: Repository,
        extractor: ProductImageExtractor,
        *,
        download: Downloader = download_image,
        concurrency: int = DEFAULT_CONCURRENCY,
        generation_timeout: float | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._repo = repo
        self._extractor = extractor
        self._download = download
        self._concurrency = concurrency
        self._generation_timeout = generation_timeout or settings.image_generation_timeout_seconds
        self._retry = retry

    async def run(self, ctx: WorkflowContext) -> dict[str, Any]:
        event: ExtractImagesEvent = ctx.event
        flyer_id = event.data.flyer_id
        targets = event.data.items

        await ctx.step.run(
            "mark-processing",
            lambda: self._repo.update_flyer(flyer_id, image_extraction_status="processing"),
        )

        lock = asyncio.Lock()
        cached: dict[str, DownloadedImage] = {}

        async def _flyer_image() -> DownloadedImage:
            async with lock:
                if "image" not in cached:
                    cached["image"] = await self._download(event.data.source_url, None)
            return cached["image"]

        semaphore = asyncio.Semaphore(self._concurrency)
        outcomes = await asyncio.gather(
            *(self._extract_one(ctx, flyer_id, target, _flyer_image, semaphore) for target in targets)
        )

        completed = sum(1 for outcome in outcomes if outcome.status == "completed")
        failed = len(outcomes) - completed
        status = "failed" if targets and completed == 0 else "completed"
        await ctx.step.run(
            "summarize",
            lambda: self._repo.update_flyer(
                flyer_id,
                image_extraction_status=status,
                image_extraction_summary=ImageExtractionSummary(completed=completed, failed=failed),
            ),
        )
        logger.info("flyer_images_finished", flyer_id=flyer_id, completed=completed, failed=failed)
        return {"completed": completed, "failed": failed}

    async def on_failure(self, event: ExtractImagesEvent, reason: str) -> None:
        flyer_id = event.data.flyer_id
        wanted = {target.item_id for target in event.data.items}
        completed = failed = 0
        for item in await self._repo.list_items(flyer_id):
            if item.id not in wanted:
                continue
            if item.image_extraction_status == "completed":
                completed += 1
                continue
            failed += 1
            if item.image_extraction_status != "failed":
                await self._repo.update_item(item.id, image_extraction_status="failed", image_extraction_error=reason)
        try:
            await self._repo.update_flyer(
                flyer_id,
                image_extraction_status="completed" if completed else "failed",
                image_extraction_summary=ImageExtractionSummary(completed=completed, failed=failed),
            )
        except NotFoundError:
            logger.warning("flyer_missing_on_failure", flyer_id=flyer_id)

    async def _extract_one(
        self,
        ctx: WorkflowContext,
        flyer_id: str,
        target: ImageTarget,
        flyer_image: Callable[[], Awaitable[DownloadedImage]],
        semaphore: asyncio.Semaphore,
    ) -> ImageOutcome:
        async def _extract() -> ImageOutcome:
            await self._repo.update_item(target.item_id, image_extraction_status="processing")
            images = await self._extractor.extract(flyer_id, await flyer_image(), target)
            await self._repo.update_item(
                target.item_id,
                image_extraction_status="completed",
                image_extraction_error=None,
                extracted_images=images,
            )
            return ImageOutcome(item_id=target.item_id, status="completed")

        try:
            async with semaphore:
                raw = await ctx.step.run(
                    f"extract-image:{target.item_id}",
                    _extract,
                    timeout=self._generation_timeout,
                    retry=self._retry,
                )
        except StepFailed as exc:
            error = truncate_reason(exc.cause.message)
            await self._repo.update_item(
                target.item_id, image_extraction_status="failed", image_extraction_error=error
            )
            logger.warning("item_image_failed", item_id=target.item_id, error=error)
            return ImageOutcome(item_id=target.item_id, status="failed", error=error)
        return ImageOutcome.model_validate(raw)
