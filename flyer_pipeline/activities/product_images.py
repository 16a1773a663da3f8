"""Per-item product image extraction: generate, optimize, upload.

Gemini crops the product out of the flyer onto a clean background. The
result is resized into the WebP variants in ``utils.image`` and uploaded to
R2 under ``flyers/{flyer_id}/items/{item_id}/``.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog
from google import genai
from google.genai import types

from flyer_pipeline.config import settings
from flyer_pipeline.errors import PipelineError, SafetyRejection
from flyer_pipeline.models.contracts import ImageTarget
from flyer_pipeline.models.entities import (
    CleanImages,
    ExtractedImages,
    ExtractionMetadata,
    ImageResolutions,
)
from flyer_pipeline.utils.gemini import IMAGE_CONFIG, block_reason, extract_image, extract_text, get_client
from flyer_pipeline.utils.http import DownloadedImage
from flyer_pipeline.utils.image import image_to_bytes, optimize_product_image
from flyer_pipeline.utils.prompts import load_prompt
from flyer_pipeline.utils.r2 import ObjectStore

logger = structlog.get_logger()

MANUAL_REVIEW_QUALITY = 0.7


class ImageGenerator(Protocol):
    async def generate(self, flyer_image: DownloadedImage, target: ImageTarget) -> bytes: ...


class GeminiImageGenerator:
    def __init__(self, client: genai.Client | None = None, model: str | None = None) -> None:
        self._client = client
        self._model = model or settings.gemini_image_model

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = get_client()
        return self._client

    async def _call(self, contents: list) -> types.GenerateContentResponse:
        return await asyncio.to_thread(
            self.client.models.generate_content,
            model=self._model,
            contents=contents,
            config=IMAGE_CONFIG,
        )

    async def generate(self, flyer_image: DownloadedImage, target: ImageTarget) -> bytes:
        prompt = load_prompt("product_image").format(product_name=target.product_name)
        contents: list = [
            types.Part.from_bytes(data=flyer_image.data, mime_type=flyer_image.mime_type),
            prompt,
        ]
        logger.info("gemini_image_start", item_id=target.item_id, model=self._model)

        response = await self._call(contents)
        blocked = block_reason(response)
        if blocked:
            raise SafetyRejection(f"Image generation blocked by content policy: {blocked}")

        result = extract_image(response)
        if result is None:
            logger.warning(
                "gemini_no_image_response",
                item_id=target.item_id,
                gemini_text=extract_text(response)[:300],
            )
            response = await self._call(contents + ["Please generate the product image now."])
            blocked = block_reason(response)
            if blocked:
                raise SafetyRejection(f"Image generation blocked by content policy: {blocked}")
            result = extract_image(response)

        if result is None:
            raise PipelineError(
                f"Gemini returned text-only response for item {target.item_id}: "
                f"{extract_text(response)[:200]}",
                retryable=True,
            )
        return image_to_bytes(result)


class ProductImageExtractor:
    def __init__(self, generator: ImageGenerator, object_store: ObjectStore) -> None:
        self._generator = generator
        self._object_store = object_store

    async def extract(
        self, flyer_id: str, flyer_image: DownloadedImage, target: ImageTarget
    ) -> ExtractedImages:
        data = await self._generator.generate(flyer_image, target)
        optimized = await asyncio.to_thread(optimize_product_image, data)

        prefix = f"flyers/{flyer_id}/items/{target.item_id}"
        variants = {**optimized.clean, **optimized.resolutions}
        names = list(variants)
        urls = await asyncio.gather(
            *(self._object_store.upload(variants[name], f"{prefix}/{name}.webp") for name in names)
        )
        by_name = dict(zip(names, urls, strict=True))
        logger.info(
            "product_image_uploaded",
            item_id=target.item_id,
            variants=len(by_name),
            quality_score=optimized.quality_score,
        )

        return ExtractedImages(
            clean=CleanImages(
                original=by_name["original"],
                optimized=by_name["optimized"],
                thumbnail=by_name["thumbnail"],
            ),
            resolutions=ImageResolutions.model_validate(
                {key: by_name[key] for key in ("1x", "2x", "3x", "custom")}
            ),
            extraction_metadata=ExtractionMetadata(
                confidence=0.9,
                background_removed=True,
                text_removed=True,
                quality_score=optimized.quality_score,
                processing_method="gemini",
                manual_review_required=optimized.quality_score < MANUAL_REVIEW_QUALITY,
            ),
        )
